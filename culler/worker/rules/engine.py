"""
Rules engine.

Matches library items against rule expressions, runs rules in priority
order and tracks every run so callers can poll for its outcome.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from culler.api.schemas.media import MediaItem, manager_for
from culler.api.schemas.rules import Rule, RunSummary, DeleteFromManagerAction, UnmonitorAction
from culler.api.schemas.runs import (
    PreviewResult,
    RunAllTicket,
    RunRecord,
    RunResult,
    RunTicket,
    StartStatus,
    MatchOutcome,
)
from culler.api.services.collaborators import Collaborators
from culler.api.services.exclusions import ExclusionStore
from culler.api.services.run_status import RunStatusStore
from culler.api.services.settings_service import Settings
from culler.worker.rules.actions import ActionPipeline, ProtectionGate
from culler.worker.rules.conditions import evaluate_expression

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RuleValidationError(ValueError):
    """Rule is well-formed but cannot be accepted"""


class RuleNotFound(KeyError):
    pass


class RuleAlreadyRunning(RuntimeError):
    """Another run of the same rule has not finished yet"""

    def __init__(self, rule_id: str, run_id: Optional[str] = None):
        self.rule_id = rule_id
        self.run_id = run_id
        super().__init__(f"Rule {rule_id} is already running (run {run_id})")


class RuleEngine:
    """Holds rules, evaluates them and runs them with per-rule single flight"""

    def __init__(self, collaborators: Collaborators, pipeline: ActionPipeline, settings: Settings,
                 status_store: Optional[RunStatusStore] = None, processor: Any = None,
                 gate: Optional[ProtectionGate] = None, exclusions: Optional[ExclusionStore] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.collaborators = collaborators
        self.pipeline = pipeline
        self.settings = settings
        self.status = status_store or RunStatusStore()
        self.processor = processor
        self.gate = gate
        self.exclusions = exclusions
        self._clock = clock
        self._rules: Dict[str, Rule] = {}
        self._tasks: Set[asyncio.Task] = set()

    # Registry

    def submit(self, rule: Union[Rule, Dict[str, Any]]) -> Rule:
        """Validate and register a rule.

        Raises pydantic's ValidationError for malformed input and
        RuleValidationError for rules that are well-formed but unusable.
        """
        if not isinstance(rule, Rule):
            rule = Rule.model_validate(rule)
        if rule.id in self._rules:
            raise RuleValidationError(f"Rule {rule.id} already exists")
        self._check_rule(rule)
        self._rules[rule.id] = rule
        logger.info(f"Registered rule '{rule.name}' ({rule.id}), priority {rule.priority}")
        return rule

    def update_rule(self, rule_id: str, changes: Dict[str, Any]) -> Rule:
        current = self._require(rule_id)
        data = current.model_dump()
        data.update(changes)
        data["id"] = current.id
        data["created_at"] = current.created_at
        updated = Rule.model_validate(data)
        self._check_rule(updated)
        self._rules[rule_id] = updated
        return updated

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> List[Rule]:
        return list(self._rules.values())

    def active_rules(self) -> List[Rule]:
        """Active rules, highest priority first; ties keep creation order"""
        active = [r for r in self._rules.values() if r.active]
        return sorted(active, key=lambda r: -r.priority)

    def _require(self, rule_id: str) -> Rule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFound(rule_id)
        return rule

    @staticmethod
    def _check_rule(rule: Rule) -> None:
        owner = manager_for(rule.target_kind)
        for action in rule.actions:
            if isinstance(action, (DeleteFromManagerAction, UnmonitorAction)) and action.manager != owner:
                raise RuleValidationError(
                    f"Action {action.type} cannot apply to {rule.target_kind.value} items"
                )

    # Evaluation

    def evaluate(self, rule: Rule, candidates: Sequence[MediaItem], now: Optional[datetime] = None) -> List[MediaItem]:
        """Filter candidates by kind, library scope, active exclusions and the rule expression"""
        now = now or self._clock()
        scope = set(rule.library_ids)
        matches = []
        for media in candidates:
            if media.kind != rule.target_kind or (scope and media.library_section not in scope):
                continue
            if self.exclusions is not None:
                exclusion = self.exclusions.excluded_by(media, now)
                if exclusion is not None:
                    logger.debug(f"Skipping {media.display_title}: excluded by {exclusion.describe()}")
                    continue
            if evaluate_expression(rule.conditions, media, now):
                matches.append(media)
        return matches

    async def _candidates(self, rule: Rule) -> List[MediaItem]:
        return await self.collaborators.media_server.list_items(rule.target_kind, list(rule.library_ids))

    async def preview(self, rule: Union[Rule, str]) -> PreviewResult:
        """What a rule would match right now, with protection verdicts. No side effects."""
        if isinstance(rule, str):
            rule = self._require(rule)
        candidates = await self._candidates(rule)
        matches = self.evaluate(rule, candidates)

        result = PreviewResult(rule_id=rule.id, candidates=len(candidates))
        for media in matches:
            outcome = MatchOutcome(media=media)
            if self.gate is not None:
                verdict = await self.gate.check(media)
                if verdict.protected:
                    outcome.protected_reason = verdict.reason
            result.matches.append(outcome)
        return result

    # Execution

    async def run(self, rule: Union[Rule, str], dry_run: Optional[bool] = None) -> RunResult:
        """Run one rule to completion and record it like a tracked run.

        Raises RuleAlreadyRunning when another run of the rule is in flight.
        Failures are isolated per item.
        """
        if isinstance(rule, str):
            rule = self._require(rule)
        if dry_run is None:
            dry_run = self.settings.rules.dry_run

        record = self.status.begin(rule.id, dry_run=dry_run)
        if record is None:
            active = self.status.active_run(rule.id)
            raise RuleAlreadyRunning(rule.id, active.run_id if active else None)

        try:
            result = await self._execute(rule, dry_run)
        except asyncio.CancelledError:
            self.status.fail(record.run_id, "cancelled")
            raise
        except Exception as e:
            self.status.fail(record.run_id, str(e))
            raise
        self.status.complete(record.run_id, result)
        return result

    async def _execute(self, rule: Rule, dry_run: bool) -> RunResult:
        logger.info(f"Running rule '{rule.name}'{' (dry run)' if dry_run else ''}")
        candidates = await self._candidates(rule)
        matches = self.evaluate(rule, candidates)

        semaphore = asyncio.Semaphore(self.settings.rules.max_concurrent_matches)

        async def handle(media: MediaItem) -> MatchOutcome:
            async with semaphore:
                return await self.pipeline.execute_match(rule, media, dry_run)

        outcomes = await asyncio.gather(*(handle(m) for m in matches))

        result = RunResult(
            rule_id=rule.id,
            dry_run=dry_run,
            matches=len(matches),
            queued=sum(1 for o in outcomes if o.queued),
            errors=sum(1 for o in outcomes if o.error),
            outcomes=list(outcomes),
        )

        if not dry_run and self.processor is not None:
            sweep = await self.processor.sweep(rule_id=rule.id)
            result.deleted = sweep.completed
            result.errors += sweep.errors

        rule.last_run = RunSummary(ran_at=self._clock(), match_count=len(matches), dry_run=dry_run)

        logger.info(
            f"Rule '{rule.name}' finished: {result.matches} matches, {result.queued} queued, "
            f"{result.deleted} deleted, {result.errors} errors"
        )
        await self.collaborators.notify("rule.completed", {
            "rule": rule.name,
            "rule_id": rule.id,
            "dry_run": dry_run,
            "matches": result.matches,
            "queued": result.queued,
            "deleted": result.deleted,
            "errors": result.errors,
        })
        return result

    def start_run(self, rule_id: str, dry_run: Optional[bool] = None) -> RunTicket:
        """Start a tracked background run unless one is already in flight for the rule"""
        rule = self._rules.get(rule_id)
        if rule is None:
            return RunTicket(status=StartStatus.not_found, rule_id=rule_id)
        if dry_run is None:
            dry_run = self.settings.rules.dry_run

        record = self.status.begin(rule_id, dry_run=dry_run)
        if record is None:
            active = self.status.active_run(rule_id)
            logger.info(f"Rule '{rule.name}' is already running")
            return RunTicket(
                status=StartStatus.already_running,
                rule_id=rule_id,
                run_id=active.run_id if active else None,
            )

        task = asyncio.create_task(self._run_tracked(rule, record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return RunTicket(status=StartStatus.accepted, rule_id=rule_id, run_id=record.run_id)

    def start_all(self, dry_run: Optional[bool] = None) -> RunAllTicket:
        """Start every active rule as its own tracked run, in priority order"""
        rules = self.active_rules()
        if not rules:
            logger.info("No active rules to run")
            return RunAllTicket(status=StartStatus.no_rules)
        tickets = [self.start_run(rule.id, dry_run=dry_run) for rule in rules]
        return RunAllTicket(status=StartStatus.accepted, runs=tickets)

    async def _run_tracked(self, rule: Rule, record: RunRecord):
        try:
            result = await self._execute(rule, record.dry_run)
            self.status.complete(record.run_id, result)
        except asyncio.CancelledError:
            self.status.fail(record.run_id, "cancelled")
            raise
        except Exception as e:
            logger.error(f"Rule '{rule.name}' failed: {e}")
            self.status.fail(record.run_id, str(e))
            await self.collaborators.notify("error", {"rule": rule.name, "error": str(e)})

    async def wait_for_runs(self) -> None:
        """Wait until every background run started so far has finished"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_status(self, run_id: str) -> Optional[RunRecord]:
        return self.status.get(run_id)

    def clear_status(self, run_id: str) -> bool:
        return self.status.clear(run_id)
