from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime, timezone
from enum import Enum

from ulid import ULID


class VelocitySource(str, Enum):
    """Where an episodes-per-day figure came from"""
    measured = "measured"
    default = "default"
    unknown = "unknown"


class VelocitySample(BaseModel):
    """A viewer's recent pace through one show"""
    viewer_id: str
    show_id: str
    position: int = Field(0, description="Highest episode ordinal watched")
    season: Optional[int] = None
    episode: Optional[int] = None
    episodes_per_day: Optional[float] = Field(None, description="None when the pace is unknown")
    source: VelocitySource = VelocitySource.unknown
    sample_count: int = 0
    fallback_buffer: Optional[int] = Field(None, description="Episodes to protect when pace is unknown")
    updated_at: datetime


class ViewerProgress(BaseModel):
    """Velocity plus the watch history protection needs"""
    sample: VelocitySample
    last_watched_at: Optional[datetime] = None
    watch_times: Dict[int, datetime] = Field(default_factory=dict, description="Ordinal to latest watch")

    @property
    def viewer_id(self) -> str:
        return self.sample.viewer_id

    @property
    def position(self) -> int:
        return self.sample.position


class ViewerWindow(BaseModel):
    """Episodes one active viewer still needs"""
    viewer_id: str
    position: int
    protected_through: int
    episodes_per_day: Optional[float] = None
    source: VelocitySource = VelocitySource.unknown


class ProtectionWindow(BaseModel):
    """Per-show protection computed by one VIPER pass"""
    show_id: str
    viewers: List[ViewerWindow] = Field(default_factory=list)
    floor: int = Field(0, description="Highest ordinal any active viewer needs")
    grace_until: Optional[datetime] = Field(None, description="Watchlist grace expiry")
    computed_at: datetime

    @property
    def has_active_viewers(self) -> bool:
        return bool(self.viewers)

    def in_grace(self, now: datetime) -> bool:
        return self.grace_until is not None and now < self.grace_until

    def protecting_viewer(self, ordinal: int) -> Optional[ViewerWindow]:
        for viewer in self.viewers:
            if viewer.position < ordinal <= viewer.protected_through:
                return viewer
        return None


class EpisodeVerdict(BaseModel):
    """Deletion eligibility of one episode and the reasoning"""
    season: int
    episode: int
    ordinal: int
    eligible: bool
    reason: str
    library_id: Optional[str] = None


class Urgency(str, Enum):
    normal = "normal"
    emergency = "emergency"


class TaskStatus(str, Enum):
    pending = "pending"
    triggered = "triggered"
    failed = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RedownloadTask(BaseModel):
    """Request to re-acquire a deleted episode before a viewer needs it"""
    id: str = Field(default_factory=lambda: str(ULID()))
    show_id: str
    season: int
    episode: int
    ordinal: int
    viewer_id: str
    days_until_needed: float
    due_by: datetime
    urgency: Urgency = Urgency.normal
    status: TaskStatus = TaskStatus.pending
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def episode_key(self) -> tuple:
        return (self.show_id, self.season, self.episode)


class CleanupReport(BaseModel):
    """Summary of one VIPER cleanup pass"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    dry_run: bool = True
    shows_checked: int = 0
    episodes_checked: int = 0
    deleted: List[EpisodeVerdict] = Field(default_factory=list)
    would_delete: List[EpisodeVerdict] = Field(default_factory=list)
    protected: List[EpisodeVerdict] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)


class MovieVerdict(BaseModel):
    """Deletion eligibility of one movie"""
    library_id: str
    title: str
    eligible: bool
    reason: str
    days_since_watch: Optional[int] = None
    days_since_added: Optional[int] = None


class MovieCleanupReport(BaseModel):
    """Summary of one VIPER movie cleanup pass"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    dry_run: bool = True
    movies_checked: int = 0
    deleted: List[MovieVerdict] = Field(default_factory=list)
    would_delete: List[MovieVerdict] = Field(default_factory=list)
    protected: List[MovieVerdict] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
