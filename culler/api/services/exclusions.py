"""Operator exclusions that keep media out of cleanup"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from culler.api.schemas.exclusions import Exclusion
from culler.api.schemas.media import MediaItem

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExclusionStore:
    """In-memory exclusion list shared by the rule engine and the queue sweep.

    Expired entries never match; ``expire`` drops them for good.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._exclusions: Dict[str, Exclusion] = {}

    def add(self, exclusion: Union[Exclusion, Dict[str, Any]]) -> Exclusion:
        if not isinstance(exclusion, Exclusion):
            exclusion = Exclusion.model_validate(exclusion)
        self._exclusions[exclusion.id] = exclusion
        expiry = exclusion.expires_at.isoformat() if exclusion.expires_at else "never"
        logger.info(f"Added exclusion {exclusion.describe()}, expires {expiry}")
        return exclusion

    def remove(self, exclusion_id: str) -> bool:
        return self._exclusions.pop(exclusion_id, None) is not None

    def list(self, include_expired: bool = False) -> List[Exclusion]:
        now = self._clock()
        return [e for e in self._exclusions.values() if include_expired or not e.is_expired(now)]

    def excluded_by(self, media: MediaItem, now: Optional[datetime] = None) -> Optional[Exclusion]:
        """The first active exclusion covering the item, if any"""
        now = now or self._clock()
        for exclusion in self._exclusions.values():
            if not exclusion.is_expired(now) and exclusion.matches(media):
                return exclusion
        return None

    def expire(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        stale = [e.id for e in self._exclusions.values() if e.is_expired(now)]
        for exclusion_id in stale:
            del self._exclusions[exclusion_id]
        if stale:
            logger.info(f"Expired {len(stale)} exclusions")
        return len(stale)
