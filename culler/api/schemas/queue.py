from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum

from ulid import ULID

from culler.api.schemas.media import MediaItem


class QueueStatus(str, Enum):
    """Deletion queue item states"""
    pending = "pending"
    completed = "completed"
    cancelled = "cancelled"
    error = "error"


TERMINAL_STATUSES = {QueueStatus.completed, QueueStatus.cancelled}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueItem(BaseModel):
    """A media item waiting out its deletion buffer"""
    id: str = Field(default_factory=lambda: str(ULID()))
    media: MediaItem
    rule_id: Optional[str] = Field(None, description="Owning rule, None for manual entries")
    status: QueueStatus = QueueStatus.pending
    action_at: datetime = Field(..., description="When deletion actions become eligible")
    is_dry_run: bool = False
    error: Optional[str] = None
    note: Optional[str] = Field(None, description="Why the item reached its current state")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def media_key(self) -> str:
        return self.media.media_key

    def is_due(self, now: datetime) -> bool:
        return self.status == QueueStatus.pending and self.action_at <= now


class ProtectionVerdict(BaseModel):
    """Whether an item may be deleted right now, and why"""
    protected: bool = False
    reason: Optional[str] = None


class SweepResult(BaseModel):
    """Outcome counts of one queue sweep"""
    processed: int = 0
    completed: int = 0
    cancelled: int = 0
    errors: int = 0
    skipped_protected: int = 0
    deferred_by_limit: int = 0
    skipped_stale: int = Field(0, description="Items saved, extended or finished elsewhere mid-sweep")
    item_ids: List[str] = Field(default_factory=list)


class DeleteNowResult(BaseModel):
    """Outcome of an operator 'delete now' request"""
    item: QueueItem
    executed: bool = False
    verdict: ProtectionVerdict = Field(default_factory=ProtectionVerdict)
