from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
import re

from ulid import ULID

from culler.api.schemas.media import MediaItem


class ExclusionType(str, Enum):
    """What an exclusion's value is compared against"""
    media = "media"                  # library id
    user = "user"                    # a viewer who has watched the item
    collection = "collection"        # media server collection name
    genre = "genre"                  # case-insensitive
    tag = "tag"                      # download manager tag
    title_pattern = "title_pattern"  # case-insensitive regex searched in the title


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Exclusion(BaseModel):
    """Keeps matching media out of rule runs and the deletion sweep until it expires"""
    id: str = Field(default_factory=lambda: str(ULID()))
    type: ExclusionType
    value: str = Field(..., min_length=1)
    reason: Optional[str] = None
    expires_at: Optional[datetime] = Field(None, description="None never expires")
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("expires_at")
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def check_pattern(self):
        if self.type == ExclusionType.title_pattern:
            try:
                re.compile(self.value)
            except re.error as e:
                raise ValueError(f"Invalid title pattern {self.value!r}: {e}")
        return self

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def matches(self, media: MediaItem) -> bool:
        if self.type == ExclusionType.media:
            return media.library_id == self.value
        if self.type == ExclusionType.user:
            return self.value in media.watched_by
        if self.type == ExclusionType.collection:
            return self.value in media.collections
        if self.type == ExclusionType.genre:
            return any(g.lower() == self.value.lower() for g in media.genres)
        if self.type == ExclusionType.tag:
            return self.value in media.tags
        return re.search(self.value, media.title, re.IGNORECASE) is not None

    def describe(self) -> str:
        label = f"{self.type.value} '{self.value}'"
        return f"{label} ({self.reason})" if self.reason else label
