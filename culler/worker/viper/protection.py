"""
VIPER protection math.

Turns viewer progress into a per-show protection window and decides, per
episode, whether it may be deleted. Everything here is pure: callers pass
the current time and the data.
"""

import math
import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from culler.api.schemas.viper import (
    ProtectionWindow,
    VelocitySample,
    ViewerProgress,
    ViewerWindow,
)
from culler.api.services.settings_service import ViperSettings

logger = logging.getLogger(__name__)


class ProtectionCalculator:
    """Computes how far ahead each active viewer must stay covered"""

    def __init__(self, settings: ViperSettings):
        self.settings = settings

    def protected_through(self, sample: VelocitySample) -> int:
        """max(pos + floor, pos + velocity * buffer days), capped at pos + max ahead.

        An unknown pace uses the sample's fallback buffer in place of the
        velocity term.
        """
        s = self.settings
        position = sample.position
        if sample.episodes_per_day is None:
            ahead = sample.fallback_buffer if sample.fallback_buffer is not None else s.unknown_velocity_buffer
        else:
            ahead = math.ceil(round(sample.episodes_per_day * s.velocity_buffer_days, 6))

        through = max(position + s.min_episodes_ahead, position + ahead)
        return min(through, position + s.max_episodes_ahead)

    def is_active(self, progress: ViewerProgress, now: datetime) -> bool:
        if progress.last_watched_at is None:
            return False
        return now - progress.last_watched_at <= timedelta(days=self.settings.active_viewer_days)

    def compute(self, show_id: str, progress: Iterable[ViewerProgress], now: datetime,
                watchlist_added_at: Optional[datetime] = None) -> ProtectionWindow:
        viewers: List[ViewerWindow] = []
        for p in progress:
            if not self.is_active(p, now):
                continue
            viewers.append(ViewerWindow(
                viewer_id=p.viewer_id,
                position=p.position,
                protected_through=self.protected_through(p.sample),
                episodes_per_day=p.sample.episodes_per_day,
                source=p.sample.source,
            ))

        grace_until = None
        if watchlist_added_at is not None and self.settings.watchlist_grace_days > 0:
            grace_until = watchlist_added_at + timedelta(days=self.settings.watchlist_grace_days)

        return ProtectionWindow(
            show_id=show_id,
            viewers=viewers,
            floor=max((v.protected_through for v in viewers), default=0),
            grace_until=grace_until,
            computed_at=now,
        )

    def is_protected(self, window: ProtectionWindow, ordinal: int, now: datetime) -> Tuple[bool, Optional[str]]:
        """Inside some active viewer's window, or the show is in watchlist grace"""
        if window.in_grace(now):
            return True, f"watchlist grace until {window.grace_until.date().isoformat()}"
        viewer = window.protecting_viewer(ordinal)
        if viewer is not None:
            return True, (
                f"needed by {viewer.viewer_id} (at {viewer.position}, "
                f"protected through {viewer.protected_through})"
            )
        return False, None

    def verdict(self, window: ProtectionWindow, progress: Iterable[ViewerProgress], ordinal: int,
                now: datetime) -> Tuple[bool, str]:
        """Whether an episode may be deleted, with the reason either way"""
        protected, reason = self.is_protected(window, ordinal, now)
        if protected:
            return False, reason

        active_ids = {v.viewer_id for v in window.viewers}
        active = [p for p in progress if p.viewer_id in active_ids]
        if not active:
            return False, "no active viewers"

        passed = [p for p in active if p.position >= ordinal]
        if not passed:
            if self.settings.trim_ahead_enabled and ordinal > window.floor:
                return True, f"beyond every viewer's window (floor {window.floor})"
            return False, "not reached by any active viewer"

        if self.settings.require_all_users_watched and len(passed) < len(active):
            waiting = sorted(p.viewer_id for p in active if p.position < ordinal)
            return False, f"waiting for {', '.join(waiting)}"

        watch_times = [p.watch_times.get(ordinal) or p.last_watched_at for p in passed]
        watch_times = [t for t in watch_times if t is not None]
        if not watch_times:
            return False, "no watch time recorded"

        # Require-all waits for the last viewer to pass; otherwise the first
        triggered_at = max(watch_times) if self.settings.require_all_users_watched else min(watch_times)
        min_days = self.settings.min_days_since_watch
        age_days = (now - triggered_at).total_seconds() / 86400
        if age_days < min_days:
            return False, f"watched {age_days:.1f} days ago, waiting for {min_days}"

        who = "all active viewers" if self.settings.require_all_users_watched else "an active viewer"
        return True, f"watched by {who} {age_days:.0f} days ago"
