from datetime import timedelta

import pytest

from culler.api.schemas.queue import ProtectionVerdict, QueueStatus
from culler.api.services.collaborators import CollaboratorUnavailable
from culler.worker.queue import QueueTransitionError

from fakes import NOW, movie


class StubGate:
    def __init__(self, protected=True, reason="needed by alice"):
        self.verdict = ProtectionVerdict(protected=protected, reason=reason)
        self.checked = []

    async def check(self, media):
        self.checked.append(media.library_id)
        return self.verdict


class KeyedGate:
    """Protects only the given library ids"""

    def __init__(self, *library_ids):
        self.library_ids = set(library_ids)

    async def check(self, media):
        if media.library_id in self.library_ids:
            return ProtectionVerdict(protected=True, reason="needed by alice")
        return ProtectionVerdict()


class SavingGate:
    """Lets an operator save the item while its protection is being checked"""

    def __init__(self, queue):
        self.queue = queue
        self.saves = {}

    async def check(self, media):
        item_id = self.saves.pop(media.library_id, None)
        if item_id is not None:
            await self.queue.save(item_id)
        return ProtectionVerdict()


class BrokenGate:
    async def check(self, media):
        if media.library_id == "m1":
            raise RuntimeError("gate exploded")
        return ProtectionVerdict()


def watched_movie(library_id="m1", **fields):
    return movie(library_id, watched=True, last_watched_at=NOW - timedelta(days=40), **fields)


@pytest.fixture
def rule(engine):
    return engine.submit({
        "name": "Watched movies",
        "target_kind": "movie",
        "conditions": [{"field": "watched", "operator": "equals", "value": True}],
        "actions": [{"type": "delete_from_library"}, {"type": "delete_from_manager_movie"}],
        "buffer_days": 1,
    })


async def queued(queue, media_server, rule, media=None):
    media = media or watched_movie()
    media_server.add(media)
    item, _ = await queue.enqueue(media, rule)
    return item


class TestSweep:

    @pytest.mark.queue
    async def test_protected_item_stays_pending(self, processor, queue, media_server, rule, clock):
        item = await queued(queue, media_server, rule)
        processor.gate = StubGate()
        clock.advance(days=2)

        result = await processor.sweep()

        assert result.skipped_protected == 1
        assert (await queue.get(item.id)).status == QueueStatus.pending
        assert media_server.deleted == []

    @pytest.mark.queue
    async def test_failed_action_marks_error_then_retry(self, processor, queue, media_server, movie_manager,
                                                       rule, clock, notifier):
        item = await queued(queue, media_server, rule)
        media_server.fail_delete = CollaboratorUnavailable("media_server", "timeout")
        clock.advance(days=2)

        result = await processor.sweep()

        assert result.errors == 1
        failed = await queue.get(item.id)
        assert failed.status == QueueStatus.error
        assert failed.error == "delete_from_library: media_server unavailable: timeout"
        assert movie_manager.calls == []
        assert {"error", "service.down"} <= set(notifier.names())

        # Errors are not retried by the sweep on their own
        assert (await processor.sweep()).processed == 0

        media_server.fail_delete = None
        await queue.retry(item.id)
        assert (await processor.sweep()).completed == 1
        assert media_server.deleted == ["m1"]

    @pytest.mark.queue
    async def test_media_already_gone_completes(self, processor, queue, media_server, rule, clock):
        item = await queued(queue, media_server, rule)
        media_server.items.clear()
        clock.advance(days=2)

        assert (await processor.sweep()).completed == 1
        done = await queue.get(item.id)
        assert done.note == "already removed from the library"

    @pytest.mark.queue
    async def test_deleted_rule_cancels_item(self, processor, queue, media_server, engine, rule, clock):
        item = await queued(queue, media_server, rule)
        engine.remove_rule(rule.id)
        clock.advance(days=2)

        assert (await processor.sweep()).cancelled == 1
        assert (await queue.get(item.id)).note == "owning rule no longer exists"

    @pytest.mark.queue
    async def test_item_no_longer_matching_is_cancelled(self, processor, queue, media_server, rule, clock):
        item = await queued(queue, media_server, rule)
        media_server.add(movie("m1", watched=False))
        clock.advance(days=2)

        assert (await processor.sweep()).cancelled == 1
        assert (await queue.get(item.id)).note == "no longer matches rule conditions"
        assert media_server.deleted == []

    @pytest.mark.queue
    async def test_watchlisted_item_is_cancelled(self, processor, queue, media_server, rule, clock):
        item = await queued(queue, media_server, rule)
        media_server.add(watched_movie(on_watchlist=True))
        clock.advance(days=2)

        assert (await processor.sweep()).cancelled == 1
        assert (await queue.get(item.id)).note == "added to a watchlist"

    @pytest.mark.queue
    async def test_recheck_can_be_disabled(self, processor, queue, media_server, rule, clock, settings):
        settings.queue.recheck_conditions = False
        await queued(queue, media_server, rule)
        media_server.add(movie("m1", watched=False))
        clock.advance(days=2)

        assert (await processor.sweep()).completed == 1

    @pytest.mark.queue
    async def test_deletion_limit_per_sweep(self, processor, queue, media_server, rule, clock, settings):
        settings.queue.max_deletions_per_run = 2
        for library_id in ("m1", "m2", "m3"):
            await queued(queue, media_server, rule, watched_movie(library_id))
        clock.advance(days=2)

        first = await processor.sweep()
        assert first.completed == 2
        assert first.deferred_by_limit == 1

        second = await processor.sweep()
        assert second.completed == 1
        assert sorted(media_server.deleted) == ["m1", "m2", "m3"]

    @pytest.mark.queue
    async def test_protected_items_do_not_use_up_the_limit(self, processor, queue, media_server, rule, clock,
                                                          settings):
        settings.queue.max_deletions_per_run = 2
        for library_id in ("p1", "p2", "free"):
            await queued(queue, media_server, rule, watched_movie(library_id))
        processor.gate = KeyedGate("p1", "p2")
        clock.advance(days=2)

        result = await processor.sweep()

        assert result.skipped_protected == 2
        assert result.completed == 1
        assert result.deferred_by_limit == 0
        assert media_server.deleted == ["free"]

    @pytest.mark.queue
    async def test_failed_deletions_count_toward_the_limit(self, processor, queue, media_server, rule, clock,
                                                          settings):
        settings.queue.max_deletions_per_run = 1
        media_server.fail_delete = RuntimeError("locked")
        for library_id in ("m1", "m2"):
            await queued(queue, media_server, rule, watched_movie(library_id))
        clock.advance(days=2)

        result = await processor.sweep()

        assert result.errors == 1
        assert result.deferred_by_limit == 1
        assert len(await queue.list_items(status=QueueStatus.pending)) == 1

    @pytest.mark.queue
    async def test_item_saved_during_checks_is_not_deleted(self, processor, queue, media_server, rule, clock):
        saved = await queued(queue, media_server, rule)
        other = await queued(queue, media_server, rule, watched_movie("m2"))
        gate = SavingGate(queue)
        gate.saves["m1"] = saved.id
        processor.gate = gate
        clock.advance(days=2)

        result = await processor.sweep()

        assert result.skipped_stale == 1
        assert result.completed == 1
        assert media_server.deleted == ["m2"]
        kept = await queue.get(saved.id)
        assert kept.status == QueueStatus.cancelled
        assert kept.note == "saved by operator"
        assert (await queue.get(other.id)).status == QueueStatus.completed
        assert queue.held_locks == 0

    @pytest.mark.queue
    async def test_one_broken_item_does_not_stop_the_sweep(self, processor, queue, media_server, rule, clock):
        broken = await queued(queue, media_server, rule)
        await queued(queue, media_server, rule, watched_movie("m2"))
        processor.gate = BrokenGate()
        clock.advance(days=2)

        result = await processor.sweep()

        assert result.errors == 1
        assert result.completed == 1
        assert media_server.deleted == ["m2"]
        assert (await queue.get(broken.id)).status == QueueStatus.pending

    @pytest.mark.queue
    async def test_active_exclusion_cancels_item(self, processor, queue, media_server, rule, clock, exclusions):
        item = await queued(queue, media_server, rule, watched_movie(genres=["Documentary"]))
        exclusions.add({"type": "genre", "value": "documentary", "reason": "keep docs"})
        clock.advance(days=2)

        assert (await processor.sweep()).cancelled == 1
        assert (await queue.get(item.id)).note == "excluded: genre 'documentary' (keep docs)"
        assert media_server.deleted == []

    @pytest.mark.queue
    async def test_delete_files_action_reaches_manager(self, processor, queue, media_server, movie_manager,
                                                      engine, clock):
        rule = engine.submit({
            "name": "Purge",
            "target_kind": "movie",
            "actions": [{"type": "delete_from_manager_movie", "add_exclusion": False}, {"type": "delete_files"}],
            "buffer_days": 0,
        })
        await queued(queue, media_server, rule)

        assert (await processor.sweep()).completed == 1
        assert movie_manager.calls == [("delete", "m1", True, False)]
        assert media_server.files_deleted == ["m1"]

    @pytest.mark.queue
    async def test_manual_entry_deletes_from_library(self, processor, queue, media_server, clock):
        media_server.add(watched_movie())
        await queue.add_manual(watched_movie(), buffer_days=0)

        assert (await processor.sweep()).completed == 1
        assert media_server.deleted == ["m1"]


class TestDeleteNow:

    @pytest.mark.queue
    async def test_skips_buffer(self, processor, queue, media_server, rule):
        item = await queued(queue, media_server, rule)

        result = await processor.delete_now(item.id)

        assert result.executed is True
        assert result.item.status == QueueStatus.completed
        assert media_server.deleted == ["m1"]

    @pytest.mark.queue
    async def test_respects_protection(self, processor, queue, media_server, rule):
        item = await queued(queue, media_server, rule)
        processor.gate = StubGate(reason="watchlist grace")

        result = await processor.delete_now(item.id)

        assert result.executed is False
        assert result.verdict.protected is True
        assert result.verdict.reason == "watchlist grace"
        assert result.item.status == QueueStatus.pending

    @pytest.mark.queue
    async def test_rejects_dry_run_and_finished_items(self, processor, queue, media_server, rule):
        media_server.add(watched_movie())
        preview, _ = await queue.enqueue(watched_movie(), rule, dry_run=True)
        with pytest.raises(QueueTransitionError):
            await processor.delete_now(preview.id)

        item = await queued(queue, media_server, rule)
        await queue.save(item.id)
        with pytest.raises(QueueTransitionError):
            await processor.delete_now(item.id)

    @pytest.mark.queue
    async def test_save_during_checks_wins(self, processor, queue, media_server, rule):
        item = await queued(queue, media_server, rule)
        gate = SavingGate(queue)
        gate.saves["m1"] = item.id
        processor.gate = gate

        with pytest.raises(QueueTransitionError):
            await processor.delete_now(item.id)
        assert (await queue.get(item.id)).status == QueueStatus.cancelled
        assert media_server.deleted == []
