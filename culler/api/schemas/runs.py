from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum

from culler.api.schemas.media import MediaItem


class RunState(str, Enum):
    """Lifecycle of a tracked rule run"""
    running = "running"
    completed = "completed"
    failed = "failed"


class StartStatus(str, Enum):
    """Answer to a run request"""
    accepted = "accepted"
    already_running = "already_running"
    not_found = "not_found"
    no_rules = "no_rules"


class ActionOutcome(BaseModel):
    """What happened to one action for one match"""
    action: str
    status: str = Field(..., description="done, would_run, deferred, skipped or failed")
    detail: Optional[str] = None


class MatchOutcome(BaseModel):
    """Per-item result of running a rule's actions"""
    media: MediaItem
    queued: bool = False
    queue_item_id: Optional[str] = None
    protected_reason: Optional[str] = None
    actions: List[ActionOutcome] = Field(default_factory=list)
    error: Optional[str] = None


class RunResult(BaseModel):
    """Outcome of one rule run"""
    rule_id: str
    dry_run: bool = False
    matches: int = 0
    queued: int = 0
    deleted: int = 0
    errors: int = 0
    outcomes: List[MatchOutcome] = Field(default_factory=list)


class PreviewResult(BaseModel):
    """Side-effect free list of what a rule would match"""
    rule_id: str
    candidates: int = 0
    matches: List[MatchOutcome] = Field(default_factory=list)


class RunRecord(BaseModel):
    """Pollable status of a run, kept until cleared or expired"""
    run_id: str
    rule_id: str
    dry_run: bool = False
    state: RunState = RunState.running
    started_at: datetime
    finished_at: Optional[datetime] = None
    result: Optional[RunResult] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state != RunState.running


class RunTicket(BaseModel):
    """Answer to a single-rule run request"""
    status: StartStatus
    rule_id: str
    run_id: Optional[str] = None


class RunAllTicket(BaseModel):
    """Answer to a run-all request"""
    status: StartStatus
    runs: List[RunTicket] = Field(default_factory=list)
