"""Proactive re-acquisition of deleted episodes that a viewer will soon need"""

import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from culler.api.schemas.media import ManagerKind, ShowCatalog
from culler.api.schemas.viper import (
    ProtectionWindow,
    RedownloadTask,
    TaskStatus,
    Urgency,
    VelocitySample,
)
from culler.api.services.collaborators import Collaborators
from culler.api.services.settings_service import ViperSettings, VelocityChangeAction

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def days_until_needed(protected_through: float, current_position: float, velocity: float) -> float:
    """(protectedThrough - currentPosition) / velocity"""
    return (protected_through - current_position) / velocity


class RedownloadScheduler:
    """Plans and dispatches re-download tasks for protected episodes that are gone.

    Open tasks are kept per episode; a later plan can only escalate a task
    from normal to emergency. Failed tasks stay failed until ``retry``.
    """

    def __init__(self, collaborators: Collaborators, settings: ViperSettings,
                 clock: Callable[[], datetime] = utcnow):
        self.collaborators = collaborators
        self.settings = settings
        self._clock = clock
        self.tasks: Dict[Tuple[str, int, int], RedownloadTask] = {}

    def classify(self, days: float) -> Optional[Urgency]:
        if days * 24 <= self.settings.emergency_buffer_hours:
            return Urgency.emergency
        if days <= self.settings.redownload_lead_days:
            return Urgency.normal
        return None

    def plan(self, window: ProtectionWindow, catalog: ShowCatalog, now: datetime) -> List[RedownloadTask]:
        """Tasks this window calls for right now, ignoring tasks already open"""
        planned: List[RedownloadTask] = []
        if not window.has_active_viewers:
            return planned

        for ordinal, episode in enumerate(catalog.ordered(self.settings.include_specials), start=1):
            if episode.present or window.protecting_viewer(ordinal) is None:
                continue

            governing = None
            for viewer in window.viewers:
                if viewer.position >= ordinal:
                    continue
                velocity = viewer.episodes_per_day or self.settings.default_velocity
                days = days_until_needed(window.floor, viewer.position, velocity)
                if governing is None or days < governing[1]:
                    governing = (viewer.viewer_id, days)

            if governing is None:
                continue

            viewer_id, days = governing
            urgency = self.classify(days)
            if urgency is None:
                logger.debug(
                    f"{catalog.title or window.show_id} S{episode.season}E{episode.episode}: "
                    f"needed in {days:.1f} days, not yet"
                )
                continue

            planned.append(RedownloadTask(
                show_id=window.show_id,
                season=episode.season,
                episode=episode.episode,
                ordinal=ordinal,
                viewer_id=viewer_id,
                days_until_needed=days,
                due_by=now + timedelta(days=days),
                urgency=urgency,
                created_at=now,
                updated_at=now,
            ))
        return planned

    async def schedule(self, window: ProtectionWindow, catalog: ShowCatalog,
                       now: Optional[datetime] = None) -> List[RedownloadTask]:
        """Plan, deduplicate against open tasks and dispatch. Returns tasks dispatched now."""
        now = now or self._clock()
        self._forget_restored(catalog)

        dispatched = []
        for task in self.plan(window, catalog, now):
            existing = self.tasks.get(task.episode_key)
            if existing is not None:
                if existing.status == TaskStatus.failed:
                    continue
                if not (task.urgency == Urgency.emergency and existing.urgency == Urgency.normal):
                    continue
                logger.warning(
                    f"Escalating re-download of {task.show_id} S{task.season}E{task.episode} to emergency"
                )
                existing.urgency = Urgency.emergency
                existing.due_by = task.due_by
                existing.days_until_needed = task.days_until_needed
                task = existing

            self.tasks[task.episode_key] = task
            await self._dispatch(task, now)
            dispatched.append(task)
        return dispatched

    def _forget_restored(self, catalog: ShowCatalog) -> None:
        for episode in catalog.episodes:
            key = (catalog.show_id, episode.season, episode.episode)
            task = self.tasks.get(key)
            if episode.present and task is not None and task.status != TaskStatus.failed:
                del self.tasks[key]

    async def _dispatch(self, task: RedownloadTask, now: datetime) -> None:
        task.updated_at = now
        manager = self.collaborators.manager(ManagerKind.tv)
        if manager is None:
            task.status = TaskStatus.failed
            task.error = "no TV download manager configured"
            return
        try:
            await manager.trigger_redownload(
                task.show_id, task.season, task.episode, emergency=task.urgency == Urgency.emergency
            )
            task.status = TaskStatus.triggered
            task.error = None
            logger.info(
                f"Triggered {task.urgency.value} re-download of {task.show_id} "
                f"S{task.season}E{task.episode} for {task.viewer_id} "
                f"(needed in {task.days_until_needed:.1f} days)"
            )
            await self.collaborators.notify("redownload.triggered", task.model_dump(mode="json"))
        except Exception as e:
            logger.error(f"Re-download of {task.show_id} S{task.season}E{task.episode} failed: {e}")
            task.status = TaskStatus.failed
            task.error = str(e)
            await self.collaborators.notify("error", {
                "action": "redownload",
                "show_id": task.show_id,
                "season": task.season,
                "episode": task.episode,
                "error": str(e),
            })

    async def retry(self, task_id: str) -> RedownloadTask:
        """Re-dispatch a failed task"""
        for task in self.tasks.values():
            if task.id == task_id:
                if task.status != TaskStatus.failed:
                    raise ValueError(f"Task {task_id} is {task.status.value}, not failed")
                await self._dispatch(task, self._clock())
                return task
        raise KeyError(task_id)

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[RedownloadTask]:
        return [t for t in self.tasks.values() if status is None or t.status == status]


class VelocityChangeDetector:
    """Flags viewers whose pace swings away from their recent baseline.

    Keeps the last ``velocity_history_size`` measured velocities per
    (viewer, show); the baseline is the mean of the newest
    ``velocity_baseline_samples`` of them before the current one.
    """

    def __init__(self, settings: ViperSettings):
        self.settings = settings
        self._history: Dict[Tuple[str, str], Deque[float]] = {}

    def observe(self, sample: VelocitySample) -> Optional[float]:
        """Record a sample; return the change percent when it crosses the threshold"""
        if sample.episodes_per_day is None:
            return None

        key = (sample.viewer_id, sample.show_id)
        history = self._history.get(key)
        if history is None:
            history = self._history[key] = deque(maxlen=self.settings.velocity_history_size)

        change = None
        recent = list(history)[-self.settings.velocity_baseline_samples:]
        if recent:
            baseline = sum(recent) / len(recent)
            if baseline > 0:
                change = (sample.episodes_per_day - baseline) / baseline * 100

        history.append(sample.episodes_per_day)

        if change is not None and abs(change) >= self.settings.velocity_change_threshold_percent:
            logger.info(
                f"Velocity change for {sample.viewer_id} on {sample.show_id}: "
                f"{change:+.0f}% ({sample.episodes_per_day:.2f} eps/day)"
            )
            return change
        return None

    def observe_all(self, samples: Iterable[VelocitySample]) -> Dict[str, List[Tuple[VelocitySample, float]]]:
        """Changes grouped by show id"""
        changed: Dict[str, List[Tuple[VelocitySample, float]]] = {}
        for sample in samples:
            change = self.observe(sample)
            if change is not None:
                changed.setdefault(sample.show_id, []).append((sample, change))
        return changed

    def wants_redownload(self) -> bool:
        return self.settings.velocity_change_action in (VelocityChangeAction.redownload, VelocityChangeAction.both)

    def wants_alert(self) -> bool:
        return self.settings.velocity_change_action in (VelocityChangeAction.alert, VelocityChangeAction.both)
