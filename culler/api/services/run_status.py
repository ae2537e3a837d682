"""Pollable status records for rule runs"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ulid import ULID

from culler.api.schemas.runs import RunRecord, RunResult, RunState

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatusStore:
    """Run records keyed by run id.

    At most one running record exists per rule id; ``begin`` is a
    check-and-set with no await inside, so it is atomic on the event loop.
    Terminal records stay until the caller clears them or they outlive
    ``ttl``; running records never expire.
    """

    def __init__(self, ttl: timedelta = timedelta(minutes=60), clock: Callable[[], datetime] = utcnow):
        self.ttl = ttl
        self._clock = clock
        self._records: Dict[str, RunRecord] = {}
        self._active: Dict[str, str] = {}

    def begin(self, rule_id: str, dry_run: bool = False) -> Optional[RunRecord]:
        """Open a running record, or return None when the rule is already running"""
        if rule_id in self._active:
            return None

        record = RunRecord(
            run_id=str(ULID()),
            rule_id=rule_id,
            dry_run=dry_run,
            started_at=self._clock(),
        )
        self._records[record.run_id] = record
        self._active[rule_id] = record.run_id
        return record

    def complete(self, run_id: str, result: RunResult) -> None:
        self._finish(run_id, RunState.completed, result=result)

    def fail(self, run_id: str, error: str) -> None:
        self._finish(run_id, RunState.failed, error=error)

    def _finish(self, run_id: str, state: RunState, result: Optional[RunResult] = None, error: Optional[str] = None):
        record = self._records.get(run_id)
        if record is None:
            logger.warning(f"Finishing unknown run {run_id}")
            return
        record.state = state
        record.finished_at = self._clock()
        record.result = result
        record.error = error
        if self._active.get(record.rule_id) == run_id:
            del self._active[record.rule_id]

    def get(self, run_id: str) -> Optional[RunRecord]:
        return self._records.get(run_id)

    def active_run(self, rule_id: str) -> Optional[RunRecord]:
        run_id = self._active.get(rule_id)
        return self._records.get(run_id) if run_id else None

    def is_running(self, rule_id: str) -> bool:
        return rule_id in self._active

    def list(self, rule_id: Optional[str] = None) -> List[RunRecord]:
        return [r for r in self._records.values() if rule_id is None or r.rule_id == rule_id]

    def clear(self, run_id: str) -> bool:
        """Drop a finished record once the caller has read it"""
        record = self._records.get(run_id)
        if record is None or not record.is_terminal:
            return False
        del self._records[run_id]
        return True

    def expire(self) -> int:
        """Remove terminal records older than the ttl"""
        cutoff = self._clock() - self.ttl
        stale = [
            run_id for run_id, record in self._records.items()
            if record.is_terminal and record.finished_at and record.finished_at < cutoff
        ]
        for run_id in stale:
            del self._records[run_id]
        if stale:
            logger.debug(f"Expired {len(stale)} run status records")
        return len(stale)
