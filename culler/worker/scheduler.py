"""
Run scheduler.

Fires rule sweeps, the deletion queue sweep, VIPER cleanup, velocity and
re-download checks and maintenance on independent schedules. A job whose
previous run is still going is skipped rather than stacked.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from culler.api.schemas.schedules import DailyAt, EveryHours

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduledJob:
    """One named job and its schedule"""

    def __init__(self, name: str, schedule: Union[DailyAt, EveryHours], func: JobFunc, now: datetime):
        self.name = name
        self.schedule = schedule
        self.func = func
        self.next_run = schedule.next_after(now)
        self.last_run: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.runs = 0
        self.skipped = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "schedule": self.schedule.describe(),
            "next_run": self.next_run.isoformat(),
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
            "running": self.running,
            "runs": self.runs,
            "skipped": self.skipped,
        }


class RunScheduler:
    """Cooperative, trigger-driven job runner"""

    def __init__(self, check_interval: int = 30, clock: Callable[[], datetime] = utcnow):
        """
        Args:
            check_interval: How often to look for due jobs (seconds)
            clock: Source of the current time
        """
        self.check_interval = check_interval
        self._clock = clock
        self.jobs: Dict[str, ScheduledJob] = {}
        self.running = False
        self._task: Optional[asyncio.Task] = None

    def add_job(self, name: str, schedule: Union[DailyAt, EveryHours], func: JobFunc) -> ScheduledJob:
        job = ScheduledJob(name, schedule, func, self._clock())
        self.jobs[name] = job
        logger.info(f"Scheduled {name}: {schedule.describe()}, next at {job.next_run.isoformat()}")
        return job

    def reschedule(self, name: str, schedule: Union[DailyAt, EveryHours]) -> None:
        job = self.jobs[name]
        job.schedule = schedule
        job.next_run = schedule.next_after(self._clock())

    async def start(self):
        """Start the scheduler"""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.running = True
        self._task = asyncio.create_task(self._run_scheduler())
        logger.info(f"Run scheduler started (check interval: {self.check_interval}s)")

    async def stop(self):
        """Stop the scheduler and wait for in-flight jobs"""
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        pending = [job._task for job in self.jobs.values() if job.running]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Run scheduler stopped")

    async def _run_scheduler(self):
        """Main scheduler loop"""
        while self.running:
            try:
                self.tick()
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduler error: {e}")
                await asyncio.sleep(self.check_interval)

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Start every job that is due. Returns the names started."""
        now = now or self._clock()
        started = []
        for job in self.jobs.values():
            if job.next_run > now:
                continue
            job.next_run = job.schedule.next_after(now)
            if job.running:
                job.skipped += 1
                logger.warning(f"Skipping {job.name}: previous run still in progress")
                continue
            job._task = asyncio.create_task(self._run_job(job, now))
            started.append(job.name)
        return started

    def run_now(self, name: str) -> bool:
        """Start a job outside its schedule; False if it is already running"""
        job = self.jobs[name]
        if job.running:
            return False
        job._task = asyncio.create_task(self._run_job(job, self._clock()))
        return True

    async def wait_idle(self) -> None:
        """Wait for every job started so far"""
        pending = [job._task for job in self.jobs.values() if job.running]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run_job(self, job: ScheduledJob, started_at: datetime):
        logger.info(f"Running scheduled job {job.name}")
        try:
            await job.func()
            job.last_error = None
        except Exception as e:
            logger.error(f"Scheduled job {job.name} failed: {e}")
            job.last_error = str(e)
        finally:
            job.last_run = started_at
            job.runs += 1

    def status(self) -> List[Dict[str, Any]]:
        return [job.to_dict() for job in self.jobs.values()]
