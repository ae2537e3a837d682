"""
Deletion queue sweep.

Promotes pending queue items whose buffer has expired into real deletions
when:
1. The item is not a dry-run preview
2. The protection gate (manual protection, watchlist grace, VIPER) is clear
3. The owning rule still matches the current state of the item
4. No active exclusion covers the item

Anything still protected stays pending and is looked at again next sweep.
The item is re-read under its media lock right before the deletion actions
run, so an operator save or extend that lands mid-check always wins.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Set

from culler.api.schemas.queue import DeleteNowResult, ProtectionVerdict, QueueItem, QueueStatus, SweepResult
from culler.api.schemas.rules import Rule
from culler.api.services.collaborators import Collaborators, CollaboratorUnavailable
from culler.api.services.exclusions import ExclusionStore
from culler.api.services.settings_service import Settings
from culler.worker.queue import DeletionQueue, QueueItemNotFound, QueueTransitionError
from culler.worker.rules.actions import ActionPipeline, DeferredActionError, ProtectionGate
from culler.worker.rules.conditions import evaluate_expression

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Outcome(str, Enum):
    """What happened to one item during a sweep"""
    completed = "completed"
    cancelled = "cancelled"
    error = "error"
    protected = "protected"
    deferred = "deferred"   # deletion limit reached
    stale = "stale"         # changed by someone else, or already being processed


class DeletionBudget:
    """Counts executed deletions (completed or failed) against a per-sweep cap"""

    def __init__(self, limit: Optional[int]):
        self.remaining = limit

    @property
    def exhausted(self) -> bool:
        return self.remaining is not None and self.remaining <= 0

    def take(self) -> bool:
        if self.exhausted:
            return False
        if self.remaining is not None:
            self.remaining -= 1
        return True

    def give_back(self):
        if self.remaining is not None:
            self.remaining += 1


class QueueProcessor:
    """Executes deferred deletion actions for due queue items"""

    def __init__(self, queue: DeletionQueue, pipeline: ActionPipeline, collaborators: Collaborators,
                 settings: Settings, gate: Optional[ProtectionGate] = None,
                 rule_lookup: Optional[Callable[[str], Optional[Rule]]] = None,
                 exclusions: Optional[ExclusionStore] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.queue = queue
        self.pipeline = pipeline
        self.collaborators = collaborators
        self.settings = settings
        self.gate = gate
        self.rule_lookup = rule_lookup
        self.exclusions = exclusions
        self._clock = clock
        self._in_flight: Set[str] = set()

    async def sweep(self, now: Optional[datetime] = None, rule_id: Optional[str] = None) -> SweepResult:
        """Process every due item; at most ``max_deletions_per_run`` of them are executed"""
        now = now or self._clock()
        due = await self.queue.due_items(now, rule_id=rule_id)

        result = SweepResult()
        if not due:
            return result

        budget = DeletionBudget(self.settings.queue.max_deletions_per_run)
        semaphore = asyncio.Semaphore(self.settings.queue.max_concurrent_deletions)

        async def run(item: QueueItem) -> Outcome:
            async with semaphore:
                if budget.exhausted:
                    return Outcome.deferred
                return await self._process_isolated(item, self.settings.queue.recheck_conditions, budget)

        outcomes = await asyncio.gather(*(run(item) for item in due))

        for item, outcome in zip(due, outcomes):
            if outcome == Outcome.deferred:
                result.deferred_by_limit += 1
                continue
            if outcome == Outcome.stale:
                result.skipped_stale += 1
                continue
            result.processed += 1
            result.item_ids.append(item.id)
            if outcome == Outcome.completed:
                result.completed += 1
            elif outcome == Outcome.cancelled:
                result.cancelled += 1
            elif outcome == Outcome.error:
                result.errors += 1
            else:
                result.skipped_protected += 1

        if result.deferred_by_limit:
            logger.warning(
                f"Deletion limit of {self.settings.queue.max_deletions_per_run} reached; "
                f"{result.deferred_by_limit} due items wait for the next sweep"
            )
        logger.info(
            f"Queue sweep: {result.completed} deleted, {result.cancelled} cancelled, "
            f"{result.errors} errors, {result.skipped_protected} protected"
        )
        return result

    async def delete_now(self, item_id: str) -> DeleteNowResult:
        """Skip the buffer but not the protection check"""
        item = await self.queue.get(item_id)
        if item.is_dry_run:
            raise QueueTransitionError("Dry-run previews cannot be executed")
        if item.status != QueueStatus.pending:
            raise QueueTransitionError(f"Cannot delete a {item.status.value} queue item")

        outcome = await self._process(item, recheck=False)
        if outcome == Outcome.stale:
            raise QueueTransitionError(f"Queue item {item_id} changed while it was being deleted")

        item = await self.queue.get(item_id)
        result = DeleteNowResult(item=item, executed=outcome in (Outcome.completed, Outcome.error))
        if outcome == Outcome.protected:
            result.verdict = await self._verdict(item)
        return result

    async def _verdict(self, item: QueueItem) -> ProtectionVerdict:
        if self.gate is None:
            return ProtectionVerdict()
        return await self.gate.check(item.media)

    async def _process_isolated(self, item: QueueItem, recheck: bool, budget: DeletionBudget) -> Outcome:
        """One item's failure never aborts the rest of the sweep"""
        try:
            return await self._process(item, recheck, budget)
        except (QueueTransitionError, QueueItemNotFound) as e:
            logger.info(f"Queue item {item.id} changed during the sweep: {e}")
            return Outcome.stale
        except Exception as e:
            logger.error(f"Unexpected error processing queue item {item.id}: {e}", exc_info=True)
            return Outcome.error

    async def _process(self, item: QueueItem, recheck: bool, budget: Optional[DeletionBudget] = None) -> Outcome:
        if item.id in self._in_flight:
            return Outcome.stale
        self._in_flight.add(item.id)
        try:
            return await self._process_unguarded(item, recheck, budget)
        finally:
            self._in_flight.discard(item.id)

    async def _process_unguarded(self, item: QueueItem, recheck: bool, budget: Optional[DeletionBudget]) -> Outcome:
        rule = None
        if item.rule_id is not None:
            rule = self.rule_lookup(item.rule_id) if self.rule_lookup else None
            if rule is None:
                return await self._close(item, QueueStatus.cancelled, "owning rule no longer exists")

        try:
            media = await self.collaborators.media_server.get_item(item.media_key)
        except Exception as e:
            return await self._fail(item, rule, e, "lookup")

        if media is None:
            return await self._close(item, QueueStatus.completed, "already removed from the library")

        if self.gate is not None:
            verdict = await self.gate.check(media)
            if verdict.protected:
                logger.info(f"Skipping {media.display_title}: {verdict.reason}")
                return Outcome.protected

        if self.exclusions is not None:
            exclusion = self.exclusions.excluded_by(media, self._clock())
            if exclusion is not None:
                return await self._close(item, QueueStatus.cancelled, f"excluded: {exclusion.describe()}")

        if recheck and rule is not None:
            if media.on_watchlist:
                return await self._close(item, QueueStatus.cancelled, "added to a watchlist")
            if not evaluate_expression(rule.conditions, media, self._clock()):
                return await self._close(item, QueueStatus.cancelled, "no longer matches rule conditions")

        if budget is not None and not budget.take():
            return Outcome.deferred

        failure: Optional[DeferredActionError] = None
        async with self.queue.claim(item.id) as claimed:
            if claimed is None:
                if budget is not None:
                    budget.give_back()
                logger.info(f"Not deleting {media.display_title}: queue item {item.id} changed during checks")
                return Outcome.stale
            # Another rule's entry for the same media may have deleted it while we waited for the lock
            if await self.collaborators.media_server.get_item(item.media_key) is None:
                if budget is not None:
                    budget.give_back()
                await self.queue.finish(claimed, QueueStatus.completed, note="already removed from the library")
                return Outcome.completed
            try:
                await self.pipeline.execute_deferred(rule, media)
            except DeferredActionError as e:
                failure = e
                await self.queue.finish(claimed, QueueStatus.error, error=self._detail(e.cause, e.action))
            else:
                await self.queue.finish(claimed, QueueStatus.completed)

        if failure is not None:
            await self.pipeline.report_failure(failure.cause, item.media, rule.name if rule else "manual",
                                               failure.action)
            return Outcome.error

        await self.collaborators.notify("media.deleted", {
            "title": media.display_title,
            "media_key": media.media_key,
            "rule": rule.name if rule else "manual",
        })
        return Outcome.completed

    async def _close(self, item: QueueItem, status: QueueStatus, note: str) -> Outcome:
        async with self.queue.claim(item.id) as claimed:
            if claimed is None:
                return Outcome.stale
            await self.queue.finish(claimed, status, note=note)
        return Outcome(status.value)

    @staticmethod
    def _detail(error: Exception, action: str) -> str:
        if isinstance(error, CollaboratorUnavailable):
            return f"{action}: {error.service} unavailable: {error.message}"
        return f"{action}: {error}"

    async def _fail(self, item: QueueItem, rule: Optional[Rule], error: Exception, action: str) -> Outcome:
        async with self.queue.claim(item.id) as claimed:
            if claimed is None:
                return Outcome.stale
            await self.queue.finish(claimed, QueueStatus.error, error=self._detail(error, action))
        await self.pipeline.report_failure(error, item.media, rule.name if rule else "manual", action)
        return Outcome.error
