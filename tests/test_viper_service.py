from datetime import timedelta

import pytest

from culler.api.schemas.media import CatalogEpisode, MediaItem, MediaKind
from culler.api.schemas.queue import QueueStatus
from culler.api.services.collaborators import CollaboratorUnavailable
from culler.api.services.settings_service import VelocityChangeAction
from culler.worker.viper.service import ViperService

from fakes import NOW, episode, movie, show, watches


@pytest.fixture
def viper(collaborators, settings, clock):
    return ViperService(collaborators, settings, clock=clock)


@pytest.fixture
def seeded(media_server):
    """Thirty episodes; alice watched 1-10 one a day, the last 11 days ago"""
    media_server.add(show("s1"))
    media_server.add(*[episode("s1", 1, n) for n in range(1, 31)])
    media_server.events["s1"] = watches("alice", "s1", range(1, 11), NOW - timedelta(days=20), timedelta(days=1))
    return media_server


class TestRefresh:

    @pytest.mark.viper
    async def test_window_from_watch_history(self, viper, seeded):
        windows = await viper.refresh()

        window = windows["s1"]
        assert [(v.viewer_id, v.position, v.protected_through) for v in window.viewers] == [("alice", 10, 19)]
        assert window.viewers[0].episodes_per_day == pytest.approx(1.25)
        assert window.floor == 19
        assert viper.snapshot()["windows"]["s1"]["floor"] == 19

    @pytest.mark.viper
    async def test_manager_catalog_keeps_ordinals_of_missing_episodes(self, viper, seeded, tv_manager):
        tv_manager.catalogs["s1"] = [CatalogEpisode(season=1, episode=n) for n in range(1, 31)]
        del seeded.items["s1-s1e5"]

        await viper.refresh()

        state = viper.shows["s1"]
        assert state.ordinal_of(1, 12, False) == 12
        assert [e.episode for e in state.catalog.ordered() if not e.present] == [5]


class TestProtectionGate:

    @pytest.mark.viper
    async def test_episode_verdicts(self, viper, seeded):
        protected = await viper.check(seeded.items["s1-s1e12"])
        assert protected.protected is True
        assert protected.reason.startswith("needed by alice")

        assert (await viper.check(seeded.items["s1-s1e2"])).protected is False

    @pytest.mark.viper
    async def test_recently_watched_episode_waits_for_min_days(self, viper, seeded):
        verdict = await viper.check(seeded.items["s1-s1e8"])

        assert verdict.protected is True
        assert verdict.reason == "watched 13.0 days ago, waiting for 15"

    @pytest.mark.viper
    async def test_episode_waits_for_every_active_viewer(self, viper, seeded, settings):
        settings.viper.min_episodes_ahead = 1
        settings.viper.unknown_velocity_buffer = 1
        seeded.events["s1"] += watches("bob", "s1", [1, 2], NOW - timedelta(days=25), timedelta(days=1))

        for number in (5, 8):
            verdict = await viper.check(seeded.items[f"s1-s1e{number}"])
            assert verdict.protected is True
            assert verdict.reason == "waiting for bob"

        settings.viper.require_all_users_watched = False
        assert (await viper.check(seeded.items["s1-s1e5"])).protected is False

    @pytest.mark.viper
    async def test_show_and_season_verdicts(self, viper, seeded):
        assert (await viper.check(seeded.items["s1"])).reason == "active viewers: alice"

        season = MediaItem(library_id="s1-s1", kind=MediaKind.season, title="Severance", show_id="s1", season_number=1)
        assert (await viper.check(season)).protected is True

    @pytest.mark.viper
    async def test_movie_watchlist_grace(self, viper, media_server, requests_tracker):
        requests_tracker.watchlist["m1"] = NOW - timedelta(days=3)

        verdict = await viper.check(movie("m1"))

        assert verdict.protected is True
        assert verdict.reason == "watchlist grace until 2026-03-12"
        assert (await viper.check(movie("m2"))).protected is False

    @pytest.mark.viper
    async def test_manual_protection(self, viper, seeded):
        viper.protect("s1")
        verdict = await viper.check(seeded.items["s1-s1e2"])
        assert verdict.reason == "manually protected"

        viper.unprotect("s1")
        assert (await viper.check(seeded.items["s1-s1e2"])).protected is False

    @pytest.mark.viper
    async def test_unknown_state_is_treated_as_protected(self, viper, seeded, notifier):
        seeded.down = True

        verdict = await viper.check(seeded.items["s1-s1e2"])

        assert verdict.protected is True
        assert verdict.reason.startswith("protection check failed")
        assert "service.down" in notifier.names()

    @pytest.mark.viper
    async def test_disabled_viper_only_checks_watchlist(self, viper, seeded, settings):
        settings.viper.enabled = False
        assert (await viper.check(seeded.items["s1-s1e12"])).protected is False

    @pytest.mark.integration
    async def test_queue_sweep_respects_viper(self, viper, seeded, engine, processor, queue):
        processor.gate = viper
        rule = engine.submit({
            "name": "Old episodes",
            "target_kind": "episode",
            "actions": [{"type": "delete_from_library"}],
            "buffer_days": 0,
        })
        needed, _ = await queue.enqueue(seeded.items["s1-s1e12"], rule)
        too_recent, _ = await queue.enqueue(seeded.items["s1-s1e8"], rule)
        done, _ = await queue.enqueue(seeded.items["s1-s1e2"], rule)

        result = await processor.sweep()

        assert result.skipped_protected == 2
        assert result.completed == 1
        assert (await queue.get(needed.id)).status == QueueStatus.pending
        assert (await queue.get(too_recent.id)).status == QueueStatus.pending
        assert seeded.deleted == ["s1-s1e2"]


class TestCleanup:

    @pytest.mark.viper
    async def test_dry_run_reports_without_deleting(self, viper, seeded, notifier):
        report = await viper.run_cleanup(dry_run=True)

        assert report.shows_checked == 1
        assert report.episodes_checked == 30
        assert [v.ordinal for v in report.would_delete] == [1, 2, 3, 4, 5, 6]
        assert report.deleted == []
        assert seeded.deleted == []
        reasons = {v.ordinal: v.reason for v in report.protected}
        assert reasons[7] == "watched 14.0 days ago, waiting for 15"
        assert reasons[12].startswith("needed by alice")
        assert reasons[25] == "not reached by any active viewer"
        assert notifier.names()[-1] == "viper.cleanup"

    @pytest.mark.viper
    async def test_live_cleanup_deletes_eligible_episodes(self, viper, seeded, tv_manager):
        report = await viper.run_cleanup(dry_run=False)

        assert report.deleted_count == 6
        assert seeded.deleted == [f"s1-s1e{n}" for n in range(1, 7)]
        assert tv_manager.calls[0] == ("delete", "s1-s1e1", True, False)
        assert viper.last_report is report

    @pytest.mark.viper
    async def test_cleanup_obeys_deletion_limit(self, viper, seeded, settings):
        settings.queue.max_deletions_per_run = 2

        report = await viper.run_cleanup(dry_run=False)

        assert report.deleted_count == 2
        limited = [v for v in report.protected if v.reason == "deletion limit of 2 reached"]
        assert len(limited) == 4

    @pytest.mark.viper
    async def test_cleanup_skips_manually_protected_show(self, viper, seeded):
        viper.protect("s1")
        report = await viper.run_cleanup(dry_run=False)
        assert report.shows_checked == 0
        assert seeded.deleted == []

    @pytest.mark.viper
    async def test_failed_delete_is_reported(self, viper, seeded, notifier):
        seeded.fail_delete = RuntimeError("locked")

        report = await viper.run_cleanup(dry_run=False)

        assert report.deleted_count == 0
        assert len(report.errors) == 6
        assert report.errors[0] == "Severance S01E01: locked"
        assert "error" in notifier.names()


@pytest.fixture
def movies(media_server, requests_tracker, viper):
    """One movie per cleanup verdict"""
    media_server.add(
        movie("old", watched=True, view_count=1, last_watched_at=NOW - timedelta(days=40)),
        movie("recent", watched=True, view_count=2, last_watched_at=NOW - timedelta(days=3)),
        movie("stale", added_at=NOW - timedelta(days=120)),
        movie("new", added_at=NOW - timedelta(days=10)),
        movie("listed", watched=True, last_watched_at=NOW - timedelta(days=40)),
        movie("kept", watched=True, last_watched_at=NOW - timedelta(days=40)),
    )
    requests_tracker.watchlist["listed"] = NOW - timedelta(days=3)
    viper.protect("kept")
    return media_server


class TestMovieCleanup:

    @pytest.mark.viper
    async def test_dry_run_verdicts(self, viper, movies, notifier):
        report = await viper.run_movie_cleanup(dry_run=True)

        assert report.movies_checked == 6
        assert [v.library_id for v in report.would_delete] == ["old", "stale"]
        assert report.would_delete[0].reason == "watched 40 days ago"
        assert report.would_delete[1].reason == "unwatched for 120 days"
        assert {v.library_id: v.reason for v in report.protected} == {
            "recent": "recently watched (3 days ago)",
            "new": "never watched (too recent)",
            "listed": "on watchlist",
            "kept": "manually protected",
        }
        assert movies.deleted == []
        assert notifier.names()[-1] == "viper.cleanup"

    @pytest.mark.viper
    async def test_live_run_deletes_from_library_and_manager(self, viper, movies, movie_manager):
        report = await viper.run_movie_cleanup(dry_run=False)

        assert [v.library_id for v in report.deleted] == ["old", "stale"]
        assert movies.deleted == ["old", "stale"]
        assert movie_manager.calls == [("delete", "old", True, False), ("delete", "stale", True, False)]
        assert viper.last_movie_report is report
        assert viper.snapshot()["last_movie_run"]["movies_checked"] == 6

    @pytest.mark.viper
    async def test_manager_failure_is_not_fatal(self, viper, movies, movie_manager):
        movie_manager.fail_delete = CollaboratorUnavailable("radarr", "timeout")

        report = await viper.run_movie_cleanup(dry_run=False)

        assert len(report.deleted) == 2
        assert report.errors == []

    @pytest.mark.viper
    async def test_obeys_deletion_limit(self, viper, movies, settings):
        settings.queue.max_deletions_per_run = 1

        report = await viper.run_movie_cleanup(dry_run=False)

        assert movies.deleted == ["old"]
        assert [v.reason for v in report.protected if v.library_id == "stale"] == ["deletion limit of 1 reached"]

    @pytest.mark.viper
    async def test_unwatched_threshold_is_configurable(self, viper, movies, settings):
        settings.viper.unwatched_movie_days = 7

        report = await viper.run_movie_cleanup(dry_run=True)

        assert [v.library_id for v in report.would_delete] == ["old", "stale", "new"]


class TestVelocityAndRedownloadChecks:

    @pytest.mark.viper
    async def test_velocity_change_alert(self, viper, seeded, settings, notifier):
        settings.viper.velocity_change_action = VelocityChangeAction.alert
        assert await viper.check_velocity() == []

        seeded.events["s1"] += watches("alice", "s1", range(11, 16), NOW - timedelta(hours=10), timedelta(hours=1))
        assert await viper.check_velocity() == ["s1"]

        event, data = notifier.events[-1]
        assert event == "velocity.changed"
        assert data["viewer_id"] == "alice"
        assert data["change_percent"] == 300.0

    @pytest.mark.viper
    async def test_missing_protected_episode_is_redownloaded(self, viper, seeded, tv_manager, settings):
        tv_manager.catalogs["s1"] = [CatalogEpisode(season=1, episode=n) for n in range(1, 31)]
        del seeded.items["s1-s1e12"]

        assert await viper.check_redownloads() == []

        settings.viper.redownload_lead_days = 8
        [task] = await viper.check_redownloads()

        assert (task.season, task.episode, task.viewer_id) == (1, 12, "alice")
        assert task.days_until_needed == pytest.approx(7.2)
        assert tv_manager.redownloads == [("s1", 1, 12, False)]

    @pytest.mark.viper
    async def test_redownloads_can_be_disabled(self, viper, seeded, settings):
        settings.viper.redownload_enabled = False
        assert await viper.check_redownloads() == []
