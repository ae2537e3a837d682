import asyncio
import logging
import signal
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from culler.api.db.database import init_db, close_db, SqliteQueueStore
from culler.api.notifications import NotificationService
from culler.api.services.collaborators import Collaborators
from culler.api.services.exclusions import ExclusionStore
from culler.api.services.run_status import RunStatusStore
from culler.api.services.settings_service import SettingsService
from culler.api.utils.logging_config import setup_logging
from culler.worker.queue import DeletionQueue, QueueStore
from culler.worker.queue_processor import QueueProcessor
from culler.worker.rules.actions import ActionPipeline
from culler.worker.rules.engine import RuleEngine
from culler.worker.scheduler import RunScheduler
from culler.worker.viper.service import ViperService

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Culler:
    """Wires the decision core together and drives it on its schedules"""

    def __init__(self, collaborators: Collaborators, settings_service: SettingsService,
                 store: Optional[QueueStore] = None, clock: Callable[[], datetime] = utcnow):
        self.collaborators = collaborators
        self.settings_service = settings_service
        self._store = store
        self._clock = clock
        self.running = False

        self.notifications: Optional[NotificationService] = None
        self.queue: Optional[DeletionQueue] = None
        self.viper: Optional[ViperService] = None
        self.pipeline: Optional[ActionPipeline] = None
        self.engine: Optional[RuleEngine] = None
        self.processor: Optional[QueueProcessor] = None
        self.scheduler: Optional[RunScheduler] = None
        self.exclusions = ExclusionStore(clock=clock)

    @property
    def settings(self):
        return self.settings_service.settings

    async def setup(self) -> None:
        """Load settings and build every component"""
        settings = await self.settings_service.load_settings()

        if self.collaborators.notifier is None:
            self.notifications = NotificationService(clock=self._clock)
            self.notifications.initialize(settings.notifications)
            self.collaborators.notifier = self.notifications

        if self._store is None:
            await init_db()
            self._store = SqliteQueueStore()

        self.queue = DeletionQueue(self._store, settings, clock=self._clock)
        self.viper = ViperService(self.collaborators, settings, clock=self._clock)
        self.pipeline = ActionPipeline(self.collaborators, self.queue, settings, gate=self.viper)
        self.engine = RuleEngine(
            self.collaborators,
            self.pipeline,
            settings,
            status_store=RunStatusStore(ttl=timedelta(minutes=settings.runs.status_ttl_minutes), clock=self._clock),
            gate=self.viper,
            exclusions=self.exclusions,
            clock=self._clock,
        )
        self.processor = QueueProcessor(
            self.queue,
            self.pipeline,
            self.collaborators,
            settings,
            gate=self.viper,
            exclusions=self.exclusions,
            rule_lookup=self.engine.get_rule,
            clock=self._clock,
        )
        self.engine.processor = self.processor

        self.scheduler = RunScheduler(check_interval=settings.schedules.check_interval_seconds, clock=self._clock)
        self._register_jobs()

    def _register_jobs(self) -> None:
        schedules = self.settings.schedules
        self.scheduler.add_job("rules", schedules.rules, self._run_rules)
        self.scheduler.add_job("queue_sweep", schedules.queue_sweep, self.processor.sweep)
        self.scheduler.add_job("viper_cleanup", schedules.viper_cleanup, self._viper_cleanup)
        self.scheduler.add_job("velocity_check", schedules.velocity_check, self._velocity_check)
        self.scheduler.add_job("redownload_check", schedules.redownload_check, self._redownload_check)
        self.scheduler.add_job("maintenance", schedules.maintenance, self.maintenance)

    async def start(self) -> None:
        """Start the scheduler loop"""
        logger.info("Starting Culler worker...")
        if self.scheduler is None:
            await self.setup()
        await self.scheduler.start()
        self.running = True
        logger.info("Culler worker started successfully")

    async def stop(self) -> None:
        """Stop scheduling, let running work finish and close storage"""
        logger.info("Stopping Culler worker...")
        self.running = False
        if self.scheduler:
            await self.scheduler.stop()
        if self.engine:
            await self.engine.wait_for_runs()
        if isinstance(self._store, SqliteQueueStore):
            await close_db()
        logger.info("Culler worker stopped")

    async def apply_settings(self, updates: Dict[str, Any]) -> None:
        """Persist a settings change and push it into the running components"""
        settings = await self.settings_service.update_settings(updates)
        for component in (self.queue, self.viper, self.pipeline, self.engine, self.processor):
            component.settings = settings
        # VIPER helpers hold the section model directly
        self.viper.tracker.settings = settings.viper
        self.viper.calculator.settings = settings.viper
        self.viper.redownloads.settings = settings.viper
        self.viper.detector.settings = settings.viper
        self.engine.status.ttl = timedelta(minutes=settings.runs.status_ttl_minutes)
        if self.notifications:
            self.notifications.initialize(settings.notifications)

        schedules = settings.schedules
        for name in self.scheduler.jobs:
            self.scheduler.reschedule(name, getattr(schedules, name))
        self.scheduler.check_interval = schedules.check_interval_seconds

    # Jobs

    async def _run_rules(self) -> None:
        ticket = self.engine.start_all()
        logger.info(f"Scheduled rule sweep: {ticket.status.value} ({len(ticket.runs)} runs)")
        await self.engine.wait_for_runs()

    async def _viper_cleanup(self) -> None:
        if not self.settings.viper.enabled:
            logger.debug("VIPER disabled, skipping cleanup")
            return
        await self.viper.run_cleanup()
        if self.settings.viper.movie_cleanup_enabled:
            await self.viper.run_movie_cleanup()

    async def _velocity_check(self) -> None:
        if self.settings.viper.enabled:
            await self.viper.check_velocity()

    async def _redownload_check(self) -> None:
        if self.settings.viper.enabled:
            await self.viper.check_redownloads()

    async def maintenance(self) -> Dict[str, int]:
        """Prune old queue entries, expired run records and lapsed exclusions"""
        pruned = await self.queue.prune()
        expired = self.engine.status.expire()
        lapsed = self.exclusions.expire()
        logger.info(
            f"Maintenance: pruned {pruned} queue items, expired {expired} run records, "
            f"dropped {lapsed} exclusions"
        )
        return {"queue_pruned": pruned, "runs_expired": expired, "exclusions_expired": lapsed}


async def serve(collaborators: Collaborators, settings_path: Optional[str] = None) -> None:
    """Run a worker until SIGINT or SIGTERM"""
    setup_logging("culler")
    worker = Culler(collaborators, SettingsService(settings_path))
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await worker.start()
    try:
        await stop_event.wait()
        logger.info("Received stop signal")
    finally:
        await worker.stop()
