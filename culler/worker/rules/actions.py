"""Executes a rule's actions against matched media"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

from culler.api.schemas.media import MediaItem, manager_for
from culler.api.schemas.queue import ProtectionVerdict
from culler.api.schemas.rules import (
    ActionPhase,
    ActionType,
    AddToCollectionAction,
    DeleteFromLibraryAction,
    Rule,
)
from culler.api.schemas.runs import ActionOutcome, MatchOutcome
from culler.api.services.collaborators import Collaborators, CollaboratorUnavailable
from culler.api.services.settings_service import Settings
from culler.worker.queue import DeletionQueue

logger = logging.getLogger(__name__)

# Deferred actions for queue entries added by hand
MANUAL_ENTRY_ACTIONS = [DeleteFromLibraryAction()]


class ProtectionGate(Protocol):
    async def check(self, media: MediaItem) -> ProtectionVerdict:
        ...


class DeferredActionError(Exception):
    """A deletion action failed; later actions for the item were not attempted"""

    def __init__(self, action: str, cause: Exception, completed: List[ActionOutcome]):
        self.action = action
        self.cause = cause
        self.completed = completed
        super().__init__(f"{action} failed: {cause}")


@dataclass
class ActionContext:
    rule: Optional[Rule]
    media: MediaItem
    dry_run: bool = False

    @property
    def rule_name(self) -> str:
        return self.rule.name if self.rule else "manual"


class ActionPipeline:
    """Runs actions in rule order.

    Queue actions stage the match, soft actions run at match time and
    deletion-class actions only run from the queue sweep through
    ``execute_deferred``.
    """

    def __init__(self, collaborators: Collaborators, queue: DeletionQueue, settings: Settings,
                 gate: Optional[ProtectionGate] = None):
        self.collaborators = collaborators
        self.queue = queue
        self.settings = settings
        self.gate = gate

        self._handlers = {
            ActionType.add_to_collection: self._add_to_collection,
            ActionType.delete_from_library: self._delete_from_library,
            ActionType.delete_from_manager_tv: self._delete_from_manager,
            ActionType.delete_from_manager_movie: self._delete_from_manager,
            ActionType.unmonitor_tv: self._unmonitor,
            ActionType.unmonitor_movie: self._unmonitor,
            ActionType.clear_request: self._clear_request,
            ActionType.add_tag: self._add_tag,
            ActionType.delete_files: self._delete_files,
        }
        missing = set(ActionType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for action types: {sorted(m.value for m in missing)}")

    async def execute_match(self, rule: Rule, media: MediaItem, dry_run: bool) -> MatchOutcome:
        """Run the match-time part of a rule for one item. Never raises."""
        ctx = ActionContext(rule=rule, media=media, dry_run=dry_run)
        outcome = MatchOutcome(media=media)

        if dry_run and self.gate is not None:
            try:
                verdict = await self.gate.check(media)
                if verdict.protected:
                    outcome.protected_reason = verdict.reason
            except Exception as e:
                outcome.protected_reason = f"protection check failed: {e}"

        # Deletion actions need a queue entry even without an explicit collection action
        if not rule.actions_in(ActionPhase.queue) and rule.actions_in(ActionPhase.deferred):
            await self._run_one(AddToCollectionAction(), ctx, outcome, stage_only=True)

        for action in rule.actions:
            if action.phase == ActionPhase.deferred:
                outcome.actions.append(ActionOutcome(action=action.type, status="deferred"))
                continue
            if dry_run and action.phase == ActionPhase.immediate:
                outcome.actions.append(ActionOutcome(action=action.type, status="would_run"))
                continue
            await self._run_one(action, ctx, outcome)

        return outcome

    async def _run_one(self, action: Any, ctx: ActionContext, outcome: MatchOutcome, stage_only: bool = False):
        try:
            if stage_only:
                result = await self._stage(ctx, outcome, add_to_collection=False)
            else:
                result = await self._dispatch(action, ctx, outcome)
            outcome.actions.append(result)
        except Exception as e:
            logger.error(f"Action {action.type} failed for {ctx.media.display_title}: {e}")
            outcome.actions.append(ActionOutcome(action=action.type, status="failed", detail=str(e)))
            outcome.error = outcome.error or f"{action.type}: {e}"
            await self.report_failure(e, ctx.media, ctx.rule_name, action.type)

    async def _dispatch(self, action: Any, ctx: ActionContext, outcome: Optional[MatchOutcome] = None) -> ActionOutcome:
        handler = self._handlers[ActionType(action.type)]
        return await handler(action, ctx, outcome)

    async def execute_deferred(self, rule: Optional[Rule], media: MediaItem) -> List[ActionOutcome]:
        """Run the deletion-class actions of a rule. Stops at the first failure."""
        ctx = ActionContext(rule=rule, media=media)
        actions = rule.actions_in(ActionPhase.deferred) if rule else MANUAL_ENTRY_ACTIONS
        done: List[ActionOutcome] = []

        for action in actions:
            try:
                done.append(await self._dispatch(action, ctx))
            except Exception as e:
                logger.error(f"Deletion action {action.type} failed for {media.display_title}: {e}")
                raise DeferredActionError(action.type, e, done) from e

        return done

    async def report_failure(self, error: Exception, media: MediaItem, rule_name: str, action: str):
        data = {
            "title": media.display_title,
            "media_key": media.media_key,
            "rule": rule_name,
            "action": action,
            "error": str(error),
        }
        await self.collaborators.notify("error", data)
        if isinstance(error, CollaboratorUnavailable):
            await self.collaborators.notify("service.down", {"service": error.service, "error": error.message})

    # Handlers

    async def _add_to_collection(self, action: AddToCollectionAction, ctx: ActionContext,
                                 outcome: Optional[MatchOutcome]) -> ActionOutcome:
        return await self._stage(ctx, outcome, add_to_collection=True, collection_name=action.collection_name)

    async def _stage(self, ctx: ActionContext, outcome: Optional[MatchOutcome], add_to_collection: bool,
                     collection_name: Optional[str] = None) -> ActionOutcome:
        item, created = await self.queue.enqueue(ctx.media, ctx.rule, dry_run=ctx.dry_run)
        if outcome is not None and item is not None:
            outcome.queued = created
            outcome.queue_item_id = item.id

        if not created:
            return ActionOutcome(action="add_to_collection", status="skipped", detail="already queued")

        if not ctx.dry_run:
            await self.collaborators.notify("queue.added", {
                "title": ctx.media.display_title,
                "media_key": ctx.media.media_key,
                "rule": ctx.rule_name,
                "action_at": item.action_at.isoformat(),
            })

        if add_to_collection and not ctx.dry_run:
            name = collection_name or self.settings.rules.collection_name
            try:
                await self.collaborators.media_server.add_to_collection(ctx.media, name)
            except Exception as e:
                # Queue entry stands even when the collection cannot be updated
                logger.warning(f"Could not add {ctx.media.display_title} to collection {name}: {e}")
                return ActionOutcome(action="add_to_collection", status="done", detail=f"queued; collection failed: {e}")

        return ActionOutcome(action="add_to_collection", status="done", detail=f"action_at {item.action_at.isoformat()}")

    async def _delete_from_library(self, action, ctx: ActionContext, outcome=None) -> ActionOutcome:
        await self.collaborators.media_server.delete_item(ctx.media)
        logger.info(f"Deleted {ctx.media.display_title} from library")
        return ActionOutcome(action=action.type, status="done")

    async def _delete_files(self, action, ctx: ActionContext, outcome=None) -> ActionOutcome:
        await self.collaborators.media_server.delete_files(ctx.media)
        logger.info(f"Deleted files of {ctx.media.display_title}")
        return ActionOutcome(action=action.type, status="done")

    async def _delete_from_manager(self, action, ctx: ActionContext, outcome=None) -> ActionOutcome:
        manager = self._manager_for(action, ctx.media)
        if manager is None:
            return ActionOutcome(action=action.type, status="skipped", detail="not handled by this manager")

        delete_files = ctx.rule.deletes_files if ctx.rule else False
        await manager.delete(ctx.media, delete_files=delete_files, add_exclusion=action.add_exclusion)
        logger.info(
            f"Deleted {ctx.media.display_title} from {manager.name} "
            f"(files={delete_files}, exclusion={action.add_exclusion})"
        )
        return ActionOutcome(action=action.type, status="done")

    async def _unmonitor(self, action, ctx: ActionContext, outcome=None) -> ActionOutcome:
        manager = self._manager_for(action, ctx.media)
        if manager is None:
            return ActionOutcome(action=action.type, status="skipped", detail="not handled by this manager")
        await manager.unmonitor(ctx.media)
        return ActionOutcome(action=action.type, status="done")

    async def _clear_request(self, action, ctx: ActionContext, outcome=None) -> ActionOutcome:
        if self.collaborators.requests is None:
            return ActionOutcome(action=action.type, status="skipped", detail="no request tracker")
        if not ctx.media.has_active_request:
            return ActionOutcome(action=action.type, status="skipped", detail="no active request")
        await self.collaborators.requests.clear_request(ctx.media)
        return ActionOutcome(action=action.type, status="done")

    async def _add_tag(self, action, ctx: ActionContext, outcome=None) -> ActionOutcome:
        manager = self.collaborators.manager(manager_for(ctx.media.kind))
        if manager is None:
            return ActionOutcome(action=action.type, status="skipped", detail="no download manager")
        await manager.add_tag(ctx.media, action.tag)
        return ActionOutcome(action=action.type, status="done", detail=action.tag)

    def _manager_for(self, action, media: MediaItem):
        if action.manager != manager_for(media.kind):
            return None
        return self.collaborators.manager(action.manager)
