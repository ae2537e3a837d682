from datetime import timedelta

import pytest

from culler.api.schemas.media import CatalogEpisode, ShowCatalog
from culler.api.schemas.viper import (
    ProtectionWindow,
    TaskStatus,
    Urgency,
    VelocitySample,
    VelocitySource,
    ViewerWindow,
)
from culler.api.services.settings_service import VelocityChangeAction, ViperSettings
from culler.worker.viper.redownload import RedownloadScheduler, VelocityChangeDetector, days_until_needed

from fakes import NOW


def catalog(missing=(), count=30):
    return ShowCatalog(
        show_id="s1",
        title="Severance",
        episodes=[CatalogEpisode(season=1, episode=n, present=n not in missing) for n in range(1, count + 1)],
    )


def window(*viewers, floor=None):
    viewers = [
        ViewerWindow(viewer_id=v, position=pos, protected_through=through, episodes_per_day=velocity)
        for v, pos, through, velocity in viewers
    ]
    return ProtectionWindow(
        show_id="s1",
        viewers=viewers,
        floor=floor if floor is not None else max(v.protected_through for v in viewers),
        computed_at=NOW,
    )


@pytest.fixture
def viper_settings(settings):
    return settings.viper


@pytest.fixture
def scheduler(collaborators, viper_settings, clock):
    return RedownloadScheduler(collaborators, viper_settings, clock=clock)


class TestDaysUntilNeeded:

    @pytest.mark.viper
    def test_scenario_c_projection(self):
        assert days_until_needed(24, 3, 0.2) == pytest.approx(105)
        assert days_until_needed(24, 22, 0.2) == pytest.approx(10)

    @pytest.mark.viper
    def test_classify(self, scheduler):
        assert scheduler.classify(105) is None
        assert scheduler.classify(10) is None
        assert scheduler.classify(3) == Urgency.normal
        assert scheduler.classify(1.5) == Urgency.normal
        assert scheduler.classify(1) == Urgency.emergency
        assert scheduler.classify(0.25) == Urgency.emergency


class TestRedownloadPlanning:

    @pytest.mark.viper
    def test_scenario_c_no_task_outside_lead_time(self, scheduler):
        # a at 10 needs episode 12 in (24 - 10) / 2 = 7 days; b is further off
        protection = window(("a", 10, 24, 2.0), ("b", 3, 6, 0.2))
        assert scheduler.plan(protection, catalog(missing={12}), NOW) == []

    @pytest.mark.viper
    def test_slow_viewer_moving_closer(self, scheduler, viper_settings):
        protection = window(("b", 22, 24, 0.2))
        assert scheduler.plan(protection, catalog(missing={23}), NOW) == []

        viper_settings.redownload_lead_days = 10
        [task] = scheduler.plan(protection, catalog(missing={23}), NOW)
        assert task.urgency == Urgency.normal
        assert task.days_until_needed == pytest.approx(10)
        assert task.due_by == NOW + timedelta(days=10)

    @pytest.mark.viper
    def test_unprotected_or_present_episodes_are_ignored(self, scheduler):
        protection = window(("a", 10, 16, 2.0))
        assert scheduler.plan(protection, catalog(missing={5, 20}), NOW) == []

    @pytest.mark.viper
    def test_unknown_pace_uses_default_velocity(self, scheduler):
        protection = window(("a", 10, 12, None))
        [task] = scheduler.plan(protection, catalog(missing={11}), NOW)
        assert task.days_until_needed == pytest.approx(2)
        assert task.viewer_id == "a"


class TestRedownloadDispatch:

    @pytest.mark.viper
    async def test_dispatch_dedup_and_escalation(self, scheduler, tv_manager, notifier):
        show = catalog(missing={12})

        [task] = await scheduler.schedule(window(("a", 10, 16, 2.0)), show, NOW)
        assert task.urgency == Urgency.normal
        assert task.status == TaskStatus.triggered
        assert tv_manager.redownloads == [("s1", 1, 12, False)]
        assert "redownload.triggered" in notifier.names()

        assert await scheduler.schedule(window(("a", 10, 16, 2.0)), show, NOW) == []

        [escalated] = await scheduler.schedule(window(("a", 10, 16, 12.0)), show, NOW)
        assert escalated.id == task.id
        assert escalated.urgency == Urgency.emergency
        assert tv_manager.redownloads[-1] == ("s1", 1, 12, True)

        assert await scheduler.schedule(window(("a", 10, 16, 2.0)), show, NOW) == []

    @pytest.mark.viper
    async def test_restored_episode_clears_task(self, scheduler):
        await scheduler.schedule(window(("a", 10, 16, 2.0)), catalog(missing={12}), NOW)
        assert len(scheduler.list_tasks()) == 1

        await scheduler.schedule(window(("a", 10, 16, 2.0)), catalog(), NOW)
        assert scheduler.list_tasks() == []

    @pytest.mark.viper
    async def test_failed_task_waits_for_retry(self, scheduler, tv_manager, notifier):
        tv_manager.fail_redownload = RuntimeError("indexer offline")
        show = catalog(missing={12})

        [task] = await scheduler.schedule(window(("a", 10, 16, 2.0)), show, NOW)
        assert task.status == TaskStatus.failed
        assert task.error == "indexer offline"
        assert "error" in notifier.names()

        assert await scheduler.schedule(window(("a", 10, 16, 12.0)), show, NOW) == []
        assert scheduler.list_tasks(TaskStatus.failed) == [task]

        tv_manager.fail_redownload = None
        retried = await scheduler.retry(task.id)
        assert retried.status == TaskStatus.triggered
        assert tv_manager.redownloads == [("s1", 1, 12, False)]

        with pytest.raises(ValueError):
            await scheduler.retry(task.id)
        with pytest.raises(KeyError):
            await scheduler.retry("missing")


def sample(velocity, viewer="a"):
    return VelocitySample(
        viewer_id=viewer, show_id="s1", episodes_per_day=velocity,
        source=VelocitySource.measured if velocity else VelocitySource.unknown, updated_at=NOW,
    )


class TestVelocityChangeDetector:

    @pytest.mark.viper
    def test_detects_swings_both_ways(self):
        detector = VelocityChangeDetector(ViperSettings())

        assert detector.observe(sample(1.0)) is None
        assert detector.observe(sample(1.0)) is None
        assert detector.observe(sample(1.2)) is None
        assert detector.observe(sample(2.2)) == pytest.approx((2.2 - 16 / 15) / (16 / 15) * 100)
        drop = detector.observe(sample(0.4))
        assert drop is not None and drop < 0

    @pytest.mark.viper
    def test_unknown_pace_is_not_recorded(self):
        detector = VelocityChangeDetector(ViperSettings())
        assert detector.observe(sample(None)) is None
        assert detector.observe(sample(1.0)) is None

    @pytest.mark.viper
    def test_viewers_are_tracked_separately(self):
        detector = VelocityChangeDetector(ViperSettings())
        detector.observe(sample(1.0, viewer="a"))
        changed = detector.observe_all([sample(3.0, viewer="b"), sample(3.0, viewer="a")])

        assert list(changed) == ["s1"]
        assert [s.viewer_id for s, _ in changed["s1"]] == ["a"]

    @pytest.mark.viper
    def test_configured_reaction(self):
        detector = VelocityChangeDetector(ViperSettings())
        assert detector.wants_redownload() and not detector.wants_alert()

        detector = VelocityChangeDetector(ViperSettings(velocity_change_action=VelocityChangeAction.both))
        assert detector.wants_redownload() and detector.wants_alert()
