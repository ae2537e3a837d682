"""Per-viewer watch pace from episode watch history"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from culler.api.schemas.media import ShowCatalog, WatchEvent
from culler.api.schemas.viper import VelocitySample, VelocitySource, ViewerProgress
from culler.api.services.settings_service import ViperSettings

logger = logging.getLogger(__name__)

# Shortest span a window is treated as covering, so a binge does not read as infinite pace
MIN_SPAN_DAYS = 1.0


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def viewers_of(events: Iterable[WatchEvent]) -> Set[str]:
    return {e.viewer_id for e in events}


class VelocityTracker:
    """Computes episodes-per-day over a viewer's most recent episodes of a show"""

    def __init__(self, settings: ViperSettings):
        self.settings = settings

    def _latest_watches(self, viewer_id: str, show_id: str, events: Iterable[WatchEvent],
                        catalog: ShowCatalog) -> Dict[int, datetime]:
        ordinals = catalog.ordinals(self.settings.include_specials)
        latest: Dict[int, datetime] = {}
        for event in events:
            if event.viewer_id != viewer_id or event.show_id != show_id:
                continue
            ordinal = ordinals.get((event.season, event.episode))
            if ordinal is None:
                continue
            watched_at = _aware(event.watched_at)
            if ordinal not in latest or watched_at > latest[ordinal]:
                latest[ordinal] = watched_at
        return latest

    def compute(self, viewer_id: str, show_id: str, events: Iterable[WatchEvent],
                catalog: ShowCatalog, now: datetime) -> VelocitySample:
        return self.progress(viewer_id, show_id, events, catalog, now).sample

    def progress(self, viewer_id: str, show_id: str, events: Iterable[WatchEvent],
                 catalog: ShowCatalog, now: datetime) -> ViewerProgress:
        events = list(events)
        latest = self._latest_watches(viewer_id, show_id, events, catalog)
        sample = self._sample(viewer_id, show_id, latest, catalog, now)

        last_watched: Optional[datetime] = None
        for event in events:
            if event.viewer_id == viewer_id and event.show_id == show_id:
                watched_at = _aware(event.watched_at)
                if last_watched is None or watched_at > last_watched:
                    last_watched = watched_at

        return ViewerProgress(sample=sample, last_watched_at=last_watched, watch_times=latest)

    def _sample(self, viewer_id: str, show_id: str, latest: Dict[int, datetime],
                catalog: ShowCatalog, now: datetime) -> VelocitySample:
        s = self.settings
        sample = VelocitySample(viewer_id=viewer_id, show_id=show_id, updated_at=now)
        if not latest:
            sample.fallback_buffer = s.unknown_velocity_buffer
            return sample

        position = max(latest)
        episode = catalog.ordered(s.include_specials)[position - 1]
        sample.position = position
        sample.season = episode.season
        sample.episode = episode.episode

        window: List[datetime] = sorted(latest.values())[-s.velocity_lookback_episodes:]
        sample.sample_count = len(window)

        if len(window) < s.min_velocity_samples:
            sample.source = VelocitySource.unknown
            sample.fallback_buffer = s.unknown_velocity_buffer
            return sample

        if len(window) == 1:
            sample.source = VelocitySource.default
            sample.episodes_per_day = s.default_velocity
            return sample

        span_days = (window[-1] - window[0]).total_seconds() / 86400
        sample.source = VelocitySource.measured
        sample.episodes_per_day = len(window) / max(span_days, MIN_SPAN_DAYS)
        logger.debug(
            f"Velocity {viewer_id}/{show_id}: {sample.episodes_per_day:.2f} eps/day "
            f"over {len(window)} episodes"
        )
        return sample
