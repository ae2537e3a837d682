"""
VIPER service.

Keeps the latest protection window per show, answers protection questions
for the deletion queue, runs the episode and movie cleanup passes and drives the
velocity-change and re-download checks.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from culler.api.schemas.media import CatalogEpisode, ManagerKind, MediaItem, MediaKind, ShowCatalog
from culler.api.schemas.queue import ProtectionVerdict
from culler.api.schemas.viper import (
    CleanupReport,
    EpisodeVerdict,
    MovieCleanupReport,
    MovieVerdict,
    ProtectionWindow,
    RedownloadTask,
    ViewerProgress,
)
from culler.api.services.collaborators import Collaborators, CollaboratorUnavailable
from culler.api.services.settings_service import Settings
from culler.worker.viper.protection import ProtectionCalculator
from culler.worker.viper.redownload import RedownloadScheduler, VelocityChangeDetector
from culler.worker.viper.velocity import VelocityTracker, viewers_of

logger = logging.getLogger(__name__)

# Windows older than this are recomputed before answering a protection check
WINDOW_MAX_AGE = timedelta(hours=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShowState:
    """Everything the last refresh learned about one show"""

    def __init__(self, show: MediaItem, catalog: ShowCatalog, episodes: Dict[Tuple[int, int], MediaItem],
                 progress: List[ViewerProgress], window: ProtectionWindow):
        self.show = show
        self.catalog = catalog
        self.episodes = episodes
        self.progress = progress
        self.window = window

    def ordinal_of(self, season: Optional[int], episode: Optional[int], include_specials: bool) -> Optional[int]:
        return self.catalog.ordinals(include_specials).get((season, episode))


class ViperService:
    """Velocity-aware episode protection"""

    def __init__(self, collaborators: Collaborators, settings: Settings,
                 clock: Callable[[], datetime] = utcnow):
        self.collaborators = collaborators
        self.settings = settings
        self._clock = clock
        self.tracker = VelocityTracker(settings.viper)
        self.calculator = ProtectionCalculator(settings.viper)
        self.redownloads = RedownloadScheduler(collaborators, settings.viper, clock=clock)
        self.detector = VelocityChangeDetector(settings.viper)
        self.shows: Dict[str, ShowState] = {}
        self.manual_protection: Set[str] = set()
        self.last_report: Optional[CleanupReport] = None
        self.last_movie_report: Optional[MovieCleanupReport] = None
        self._cleanup_lock = asyncio.Lock()

    # Manual protection

    def protect(self, key: str) -> None:
        """Never delete an item (library id) or anything in a show (show id)"""
        self.manual_protection.add(key)

    def unprotect(self, key: str) -> None:
        self.manual_protection.discard(key)

    def _manually_protected(self, media: MediaItem) -> bool:
        keys = {media.library_id, media.show_id}
        if media.external_id is not None:
            keys.add(str(media.external_id))
        return bool(keys & self.manual_protection)

    # Refresh

    async def _catalog(self, show: MediaItem, present: Dict[Tuple[int, int], MediaItem]) -> ShowCatalog:
        """Manager catalog merged with what the media server currently holds"""
        episodes: List[CatalogEpisode] = []
        manager = self.collaborators.manager(ManagerKind.tv)
        known = []
        if manager is not None:
            try:
                known = await manager.list_episodes(show.library_id)
            except NotImplementedError:
                known = []

        seen = set()
        for ep in known:
            key = (ep.season, ep.episode)
            seen.add(key)
            media = present.get(key)
            episodes.append(CatalogEpisode(
                season=ep.season,
                episode=ep.episode,
                present=media is not None,
                library_id=media.library_id if media else None,
                manager_episode_id=ep.manager_episode_id,
            ))
        for key, media in present.items():
            if key not in seen:
                episodes.append(CatalogEpisode(season=key[0], episode=key[1], present=True, library_id=media.library_id))

        return ShowCatalog(show_id=show.library_id, title=show.title, episodes=episodes)

    async def refresh_show(self, show: MediaItem, now: Optional[datetime] = None) -> ShowState:
        now = now or self._clock()
        media_server = self.collaborators.media_server

        episode_items = await media_server.list_episodes(show.library_id)
        present = {
            (e.season_number, e.episode_number): e
            for e in episode_items
            if e.season_number is not None and e.episode_number is not None
        }
        catalog = await self._catalog(show, present)
        events = await media_server.get_watch_events(show.library_id)

        progress = [
            self.tracker.progress(viewer_id, show.library_id, events, catalog, now)
            for viewer_id in sorted(viewers_of(events))
        ]

        watchlist_added_at = None
        if self.collaborators.requests is not None:
            watchlist_added_at = await self.collaborators.requests.watchlist_added_at(show)
            if watchlist_added_at is not None and watchlist_added_at.tzinfo is None:
                watchlist_added_at = watchlist_added_at.replace(tzinfo=timezone.utc)

        window = self.calculator.compute(show.library_id, progress, now, watchlist_added_at)
        state = ShowState(show, catalog, present, progress, window)
        self.shows[show.library_id] = state
        return state

    async def refresh(self, now: Optional[datetime] = None) -> Dict[str, ProtectionWindow]:
        """Recompute windows for every show. A failing show keeps its previous window."""
        now = now or self._clock()
        shows = await self.collaborators.media_server.list_shows()
        for show in shows:
            try:
                await self.refresh_show(show, now)
            except Exception as e:
                logger.error(f"VIPER refresh failed for {show.title}: {e}")
        return {show_id: state.window for show_id, state in self.shows.items()}

    async def _state_for(self, show_id: str, now: datetime) -> Optional[ShowState]:
        state = self.shows.get(show_id)
        if state is not None and now - state.window.computed_at < WINDOW_MAX_AGE:
            return state
        show = state.show if state else await self.collaborators.media_server.get_item(show_id)
        if show is None:
            return None
        return await self.refresh_show(show, now)

    # Protection gate

    async def check(self, media: MediaItem) -> ProtectionVerdict:
        """Whether the item must not be deleted right now.

        If protection cannot be determined the item is reported protected,
        so it waits for the next sweep instead of being deleted blind.
        """
        now = self._clock()
        if self._manually_protected(media):
            return ProtectionVerdict(protected=True, reason="manually protected")

        try:
            if media.kind == MediaKind.movie:
                return await self._check_watchlist(media, now)

            show_id = media.library_id if media.kind == MediaKind.show else media.show_id
            if show_id is None:
                return await self._check_watchlist(media, now)

            if not self.settings.viper.enabled:
                return await self._check_watchlist(media, now)

            state = await self._state_for(show_id, now)
            if state is None:
                return await self._check_watchlist(media, now)
            return self._check_show_state(media, state, now)

        except Exception as e:
            logger.error(f"Protection check failed for {media.display_title}: {e}")
            if isinstance(e, CollaboratorUnavailable):
                await self.collaborators.notify("service.down", {"service": e.service, "error": e.message})
            return ProtectionVerdict(protected=True, reason=f"protection check failed: {e}")

    async def _check_watchlist(self, media: MediaItem, now: datetime) -> ProtectionVerdict:
        if self.collaborators.requests is None:
            return ProtectionVerdict()
        added_at = await self.collaborators.requests.watchlist_added_at(media)
        if added_at is not None and added_at.tzinfo is None:
            added_at = added_at.replace(tzinfo=timezone.utc)
        grace = timedelta(days=self.settings.viper.watchlist_grace_days)
        if added_at is not None and now < added_at + grace:
            return ProtectionVerdict(
                protected=True,
                reason=f"watchlist grace until {(added_at + grace).date().isoformat()}",
            )
        return ProtectionVerdict()

    def _check_show_state(self, media: MediaItem, state: ShowState, now: datetime) -> ProtectionVerdict:
        window = state.window
        include_specials = self.settings.viper.include_specials

        if media.kind == MediaKind.show:
            if window.in_grace(now):
                return ProtectionVerdict(protected=True, reason="watchlist grace")
            if window.has_active_viewers:
                names = ", ".join(v.viewer_id for v in window.viewers)
                return ProtectionVerdict(protected=True, reason=f"active viewers: {names}")
            return ProtectionVerdict()

        if media.kind == MediaKind.season:
            ordinals = [
                i for i, ep in enumerate(state.catalog.ordered(include_specials), start=1)
                if ep.season == media.season_number
            ]
            for ordinal in ordinals:
                protected, reason = self.calculator.is_protected(window, ordinal, now)
                if protected:
                    return ProtectionVerdict(protected=True, reason=reason)
            if window.in_grace(now):
                return ProtectionVerdict(protected=True, reason="watchlist grace")
            return ProtectionVerdict()

        ordinal = state.ordinal_of(media.season_number, media.episode_number, include_specials)
        if ordinal is None:
            if window.in_grace(now):
                return ProtectionVerdict(protected=True, reason="watchlist grace")
            return ProtectionVerdict()
        if not window.has_active_viewers:
            protected, reason = self.calculator.is_protected(window, ordinal, now)
            return ProtectionVerdict(protected=protected, reason=reason)
        # Same eligibility as the cleanup pass: every viewer past it, and long enough ago
        eligible, reason = self.calculator.verdict(window, state.progress, ordinal, now)
        return ProtectionVerdict(protected=not eligible, reason=None if eligible else reason)

    # Cleanup

    async def run_cleanup(self, dry_run: Optional[bool] = None) -> CleanupReport:
        """Delete (or preview deleting) every episode VIPER considers safe"""
        if dry_run is None:
            dry_run = self.settings.rules.dry_run

        async with self._cleanup_lock:
            now = self._clock()
            report = CleanupReport(started_at=now, dry_run=dry_run)
            await self.refresh(now)
            limit = self.settings.queue.max_deletions_per_run

            for show_id, state in list(self.shows.items()):
                window = state.window
                if not window.has_active_viewers or show_id in self.manual_protection:
                    continue
                report.shows_checked += 1

                for ordinal, episode in enumerate(state.catalog.ordered(self.settings.viper.include_specials), start=1):
                    if not episode.present:
                        continue
                    report.episodes_checked += 1
                    media = state.episodes.get((episode.season, episode.episode))
                    eligible, reason = self.calculator.verdict(window, state.progress, ordinal, now)
                    if media is not None and self._manually_protected(media):
                        eligible, reason = False, "manually protected"

                    verdict = EpisodeVerdict(
                        season=episode.season,
                        episode=episode.episode,
                        ordinal=ordinal,
                        eligible=eligible,
                        reason=reason,
                        library_id=episode.library_id,
                    )
                    if not eligible:
                        report.protected.append(verdict)
                    elif dry_run:
                        report.would_delete.append(verdict)
                    elif report.deleted_count >= limit:
                        verdict.eligible = False
                        verdict.reason = f"deletion limit of {limit} reached"
                        report.protected.append(verdict)
                    else:
                        await self._delete_episode(state, media, verdict, report)

            report.finished_at = self._clock()
            self.last_report = report

        logger.info(
            f"VIPER cleanup{' (dry run)' if dry_run else ''}: {report.shows_checked} shows, "
            f"{len(report.deleted)} deleted, {len(report.would_delete)} would delete, "
            f"{len(report.protected)} kept, {len(report.errors)} errors"
        )
        await self.collaborators.notify("viper.cleanup", {
            "dry_run": dry_run,
            "shows_checked": report.shows_checked,
            "deleted": len(report.deleted),
            "would_delete": len(report.would_delete),
            "errors": len(report.errors),
        })
        return report

    async def _delete_episode(self, state: ShowState, media: Optional[MediaItem], verdict: EpisodeVerdict,
                              report: CleanupReport) -> None:
        label = f"{state.show.title} S{verdict.season:02d}E{verdict.episode:02d}"
        if media is None:
            report.errors.append(f"{label}: not found in library")
            return
        try:
            await self.collaborators.media_server.delete_item(media)
            manager = self.collaborators.manager(ManagerKind.tv)
            if manager is not None:
                await manager.delete(media, delete_files=True, add_exclusion=False)
            report.deleted.append(verdict)
            logger.info(f"VIPER deleted {label}: {verdict.reason}")
        except Exception as e:
            logger.error(f"VIPER failed to delete {label}: {e}")
            report.errors.append(f"{label}: {e}")
            await self.collaborators.notify("error", {"title": label, "action": "viper_cleanup", "error": str(e)})
            if isinstance(e, CollaboratorUnavailable):
                await self.collaborators.notify("service.down", {"service": e.service, "error": e.message})

    def movie_verdict(self, media: MediaItem, now: datetime, on_watchlist: bool = False) -> MovieVerdict:
        """Watched long enough ago, or never watched and added long enough ago"""
        s = self.settings.viper
        days_since_watch = int((now - media.last_watched_at).total_seconds() // 86400) if media.last_watched_at else None
        days_since_added = int((now - media.added_at).total_seconds() // 86400) if media.added_at else None
        watched = media.watched or media.view_count > 0

        verdict = MovieVerdict(
            library_id=media.library_id,
            title=media.display_title,
            eligible=False,
            reason="",
            days_since_watch=days_since_watch,
            days_since_added=days_since_added,
        )
        if self._manually_protected(media):
            verdict.reason = "manually protected"
        elif on_watchlist or media.on_watchlist:
            verdict.reason = "on watchlist"
        elif watched and days_since_watch is not None and days_since_watch >= s.min_days_since_watch:
            verdict.eligible = True
            verdict.reason = f"watched {days_since_watch} days ago"
        elif not watched and days_since_added is not None and days_since_added > s.unwatched_movie_days:
            verdict.eligible = True
            verdict.reason = f"unwatched for {days_since_added} days"
        elif not watched:
            verdict.reason = "never watched (too recent)"
        else:
            verdict.reason = f"recently watched ({days_since_watch} days ago)"
        return verdict

    async def run_movie_cleanup(self, dry_run: Optional[bool] = None) -> MovieCleanupReport:
        """Delete (or preview deleting) movies nobody is going to watch again"""
        if dry_run is None:
            dry_run = self.settings.rules.dry_run

        async with self._cleanup_lock:
            now = self._clock()
            report = MovieCleanupReport(started_at=now, dry_run=dry_run)
            limit = self.settings.queue.max_deletions_per_run
            movies = await self.collaborators.media_server.list_items(MediaKind.movie, [])

            for media in movies:
                report.movies_checked += 1
                grace = await self._check_watchlist(media, now)
                verdict = self.movie_verdict(media, now, on_watchlist=grace.protected)

                if not verdict.eligible:
                    report.protected.append(verdict)
                elif dry_run:
                    report.would_delete.append(verdict)
                elif len(report.deleted) >= limit:
                    verdict.eligible = False
                    verdict.reason = f"deletion limit of {limit} reached"
                    report.protected.append(verdict)
                else:
                    await self._delete_movie(media, verdict, report)

            report.finished_at = self._clock()
            self.last_movie_report = report

        logger.info(
            f"VIPER movie cleanup{' (dry run)' if dry_run else ''}: {report.movies_checked} movies, "
            f"{len(report.deleted)} deleted, {len(report.would_delete)} would delete, "
            f"{len(report.protected)} kept, {len(report.errors)} errors"
        )
        await self.collaborators.notify("viper.cleanup", {
            "dry_run": dry_run,
            "movies_checked": report.movies_checked,
            "deleted": len(report.deleted),
            "would_delete": len(report.would_delete),
            "errors": len(report.errors),
        })
        return report

    async def _delete_movie(self, media: MediaItem, verdict: MovieVerdict, report: MovieCleanupReport) -> None:
        try:
            await self.collaborators.media_server.delete_item(media)
        except Exception as e:
            logger.error(f"VIPER failed to delete {media.display_title}: {e}")
            report.errors.append(f"{media.display_title}: {e}")
            await self.collaborators.notify("error", {
                "title": media.display_title, "action": "viper_movie_cleanup", "error": str(e),
            })
            if isinstance(e, CollaboratorUnavailable):
                await self.collaborators.notify("service.down", {"service": e.service, "error": e.message})
            return

        report.deleted.append(verdict)
        logger.info(f"VIPER deleted {media.display_title}: {verdict.reason}")

        # The library copy is gone either way; the manager entry is best effort
        manager = self.collaborators.manager(ManagerKind.movie)
        if manager is not None:
            try:
                await manager.delete(media, delete_files=True, add_exclusion=False)
            except Exception as e:
                logger.warning(f"Could not remove {media.display_title} from {manager.name}: {e}")

    # Velocity and re-download checks

    async def check_velocity(self) -> List[str]:
        """Refresh velocities; recompute re-downloads for shows whose pace swung"""
        now = self._clock()
        await self.refresh(now)
        samples = [p.sample for state in self.shows.values() for p in state.progress]
        changed = self.detector.observe_all(samples)

        for show_id, swings in changed.items():
            if self.detector.wants_alert():
                for sample, change in swings:
                    await self.collaborators.notify("velocity.changed", {
                        "show_id": show_id,
                        "viewer_id": sample.viewer_id,
                        "episodes_per_day": sample.episodes_per_day,
                        "change_percent": round(change, 1),
                    })
            if self.detector.wants_redownload() and self.settings.viper.redownload_enabled:
                await self.redownloads.schedule(self.shows[show_id].window, self.shows[show_id].catalog, now)

        return list(changed)

    async def check_redownloads(self, refresh: bool = True) -> List[RedownloadTask]:
        """Regular re-download pass over every show"""
        if not self.settings.viper.redownload_enabled:
            return []
        now = self._clock()
        if refresh:
            await self.refresh(now)
        dispatched: List[RedownloadTask] = []
        for state in self.shows.values():
            dispatched.extend(await self.redownloads.schedule(state.window, state.catalog, now))
        return dispatched

    # Read-back

    def snapshot(self) -> Dict[str, object]:
        """Last-run summary and the protection reasoning per show"""
        return {
            "last_run": self.last_report.model_dump(mode="json") if self.last_report else None,
            "last_movie_run": self.last_movie_report.model_dump(mode="json") if self.last_movie_report else None,
            "windows": {
                show_id: state.window.model_dump(mode="json") for show_id, state in self.shows.items()
            },
            "manual_protection": sorted(self.manual_protection),
            "redownloads": [t.model_dump(mode="json") for t in self.redownloads.list_tasks()],
        }
