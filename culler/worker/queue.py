"""Deletion queue state machine and its storage interface"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from culler.api.schemas.media import MediaItem
from culler.api.schemas.queue import QueueItem, QueueStatus, TERMINAL_STATUSES
from culler.api.schemas.rules import Rule
from culler.api.services.settings_service import Settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueTransitionError(Exception):
    """Requested change is not allowed from the item's current state"""


class QueueItemNotFound(KeyError):
    pass


class QueueStore(ABC):
    """Persistence for queue items"""

    @abstractmethod
    async def add(self, item: QueueItem) -> None:
        pass

    @abstractmethod
    async def update(self, item: QueueItem) -> None:
        pass

    @abstractmethod
    async def get(self, item_id: str) -> Optional[QueueItem]:
        pass

    @abstractmethod
    async def remove(self, item_id: str) -> None:
        pass

    @abstractmethod
    async def list(
        self,
        status: Optional[QueueStatus] = None,
        rule_id: Optional[str] = None,
        is_dry_run: Optional[bool] = None,
        media_key: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[QueueItem]:
        """Items ordered by action_at, then creation"""

    @abstractmethod
    async def due(self, now: datetime, limit: Optional[int] = None, rule_id: Optional[str] = None) -> List[QueueItem]:
        """Pending, non dry-run items whose action_at has passed"""

    @abstractmethod
    async def prune(self, before: datetime, statuses: Iterable[QueueStatus]) -> int:
        """Delete items in the given states last updated before a cutoff"""


class MemoryQueueStore(QueueStore):
    """Dict-backed store for tests and embedded use"""

    def __init__(self):
        self._items: Dict[str, QueueItem] = {}

    async def add(self, item: QueueItem) -> None:
        self._items[item.id] = item.model_copy(deep=True)

    async def update(self, item: QueueItem) -> None:
        if item.id not in self._items:
            raise QueueItemNotFound(item.id)
        self._items[item.id] = item.model_copy(deep=True)

    async def get(self, item_id: str) -> Optional[QueueItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def remove(self, item_id: str) -> None:
        self._items.pop(item_id, None)

    async def list(self, status=None, rule_id=None, is_dry_run=None, media_key=None, limit=None, offset=0):
        items = [
            i for i in self._items.values()
            if (status is None or i.status == status)
            and (rule_id is None or i.rule_id == rule_id)
            and (is_dry_run is None or i.is_dry_run == is_dry_run)
            and (media_key is None or i.media_key == media_key)
        ]
        items.sort(key=lambda i: (i.action_at, i.created_at, i.id))
        items = items[offset:]
        if limit is not None:
            items = items[:limit]
        return [i.model_copy(deep=True) for i in items]

    async def due(self, now, limit=None, rule_id=None):
        items = await self.list(status=QueueStatus.pending, rule_id=rule_id, is_dry_run=False)
        items = [i for i in items if i.is_due(now)]
        return items[:limit] if limit is not None else items

    async def prune(self, before, statuses):
        statuses = set(statuses)
        stale = [
            item_id for item_id, item in self._items.items()
            if item.status in statuses and item.updated_at < before
        ]
        for item_id in stale:
            del self._items[item_id]
        return len(stale)


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class DeletionQueue:
    """Buffered waiting area between a rule match and its deletion.

    pending -> completed | cancelled | error, and error -> pending on an
    explicit retry. Writes are serialized per media item; items for
    different media never wait on each other.
    """

    def __init__(self, store: QueueStore, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.settings = settings
        self._clock = clock
        self._locks: Dict[str, _KeyLock] = {}

    @asynccontextmanager
    async def _media_lock(self, media_key: str) -> AsyncIterator[None]:
        """Serialize writes for one media item; the lock is dropped once nobody holds or awaits it"""
        entry = self._locks.get(media_key)
        if entry is None:
            entry = self._locks[media_key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[media_key]

    @property
    def held_locks(self) -> int:
        return len(self._locks)

    def buffer_days_for(self, rule: Optional[Rule]) -> int:
        if rule is not None and rule.buffer_days is not None:
            return rule.buffer_days
        return self.settings.rules.default_buffer_days

    async def enqueue(self, media: MediaItem, rule: Optional[Rule], dry_run: bool = False) -> Tuple[Optional[QueueItem], bool]:
        """Stage a match. Returns (item, created).

        A live enqueue is idempotent per (media, rule) and clears dry-run
        previews of the same media. A dry-run enqueue refreshes its own
        preview and yields (existing live item, False) when a live entry
        already exists.
        """
        now = self._clock()
        rule_id = rule.id if rule else None
        action_at = now + timedelta(days=self.buffer_days_for(rule))

        async with self._media_lock(media.media_key):
            pending = await self.store.list(status=QueueStatus.pending, media_key=media.media_key)
            live = [i for i in pending if not i.is_dry_run and i.rule_id == rule_id]
            previews = [i for i in pending if i.is_dry_run]

            if live:
                return live[0], False

            if dry_run:
                for preview in previews:
                    if preview.rule_id == rule_id:
                        preview.action_at = action_at
                        preview.media = media
                        preview.updated_at = now
                        await self.store.update(preview)
                        return preview, False
            else:
                for preview in previews:
                    await self.store.remove(preview.id)

            item = QueueItem(
                media=media,
                rule_id=rule_id,
                action_at=action_at,
                is_dry_run=dry_run,
                created_at=now,
                updated_at=now,
            )
            await self.store.add(item)

        logger.info(
            f"Queued {media.display_title} ({media.media_key}) for deletion at {action_at.isoformat()}"
            f"{' [dry run]' if dry_run else ''}"
        )
        return item, True

    async def add_manual(self, media: MediaItem, buffer_days: Optional[int] = None) -> QueueItem:
        """Operator-initiated entry with no owning rule"""
        now = self._clock()
        days = self.settings.rules.default_buffer_days if buffer_days is None else buffer_days
        async with self._media_lock(media.media_key):
            existing = await self.store.list(status=QueueStatus.pending, media_key=media.media_key, is_dry_run=False)
            for item in existing:
                if item.rule_id is None:
                    return item
            item = QueueItem(
                media=media,
                action_at=now + timedelta(days=days),
                created_at=now,
                updated_at=now,
            )
            await self.store.add(item)
        logger.info(f"Manually queued {media.display_title} ({media.media_key})")
        return item

    async def get(self, item_id: str) -> QueueItem:
        item = await self.store.get(item_id)
        if item is None:
            raise QueueItemNotFound(item_id)
        return item

    async def list_items(
        self,
        status: Optional[QueueStatus] = None,
        rule_id: Optional[str] = None,
        is_dry_run: Optional[bool] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[QueueItem]:
        return await self.store.list(
            status=status, rule_id=rule_id, is_dry_run=is_dry_run, limit=limit, offset=offset
        )

    async def _transition(self, item_id: str, change: Callable[[QueueItem], bool]) -> QueueItem:
        """Apply ``change`` under the item's media lock; it returns False for a no-op"""
        item = await self.get(item_id)
        async with self._media_lock(item.media_key):
            item = await self.get(item_id)
            if change(item):
                item.updated_at = self._clock()
                await self.store.update(item)
        return item

    @asynccontextmanager
    async def claim(self, item_id: str) -> AsyncIterator[Optional[QueueItem]]:
        """Hold the item's media lock and yield a fresh copy of it.

        Yields None when the item is no longer a live pending entry. While
        the claim is held no save, extend or other transition of that media
        can interleave; finish the item with ``finish`` before leaving.
        """
        item = await self.get(item_id)
        async with self._media_lock(item.media_key):
            item = await self.get(item_id)
            if item.status != QueueStatus.pending or item.is_dry_run:
                yield None
            else:
                yield item

    async def finish(self, item: QueueItem, status: QueueStatus, note: Optional[str] = None,
                     error: Optional[str] = None) -> QueueItem:
        """Record the outcome of a claimed item. Only valid inside ``claim``."""
        item.status = status
        item.note = note
        item.error = error
        item.updated_at = self._clock()
        await self.store.update(item)
        return item

    async def save(self, item_id: str) -> QueueItem:
        """Keep the media: pending or error -> cancelled. Saving twice is a no-op."""
        def change(item: QueueItem) -> bool:
            if item.status == QueueStatus.cancelled:
                return False
            if item.status == QueueStatus.completed:
                raise QueueTransitionError(f"Queue item {item.id} was already deleted")
            item.status = QueueStatus.cancelled
            item.note = "saved by operator"
            return True

        item = await self._transition(item_id, change)
        logger.info(f"Saved {item.media.display_title} from deletion")
        return item

    async def extend(self, item_id: str, days: int) -> QueueItem:
        """Push action_at forward by whole days"""
        if days <= 0:
            raise ValueError("Extension must be a positive number of days")

        def change(item: QueueItem) -> bool:
            if item.status != QueueStatus.pending:
                raise QueueTransitionError(f"Cannot extend a {item.status.value} queue item")
            item.action_at = item.action_at + timedelta(days=days)
            return True

        item = await self._transition(item_id, change)
        logger.info(f"Extended {item.media.display_title} by {days} days to {item.action_at.isoformat()}")
        return item

    async def retry(self, item_id: str) -> QueueItem:
        """error -> pending, due immediately"""
        def change(item: QueueItem) -> bool:
            if item.status != QueueStatus.error:
                raise QueueTransitionError(f"Only errored items can be retried, not {item.status.value}")
            item.status = QueueStatus.pending
            item.action_at = self._clock()
            item.error = None
            return True

        return await self._transition(item_id, change)

    async def mark_completed(self, item_id: str, note: Optional[str] = None) -> QueueItem:
        def change(item: QueueItem) -> bool:
            self._require_pending(item)
            item.status = QueueStatus.completed
            item.note = note
            return True

        return await self._transition(item_id, change)

    async def mark_cancelled(self, item_id: str, note: str) -> QueueItem:
        def change(item: QueueItem) -> bool:
            self._require_pending(item)
            item.status = QueueStatus.cancelled
            item.note = note
            return True

        return await self._transition(item_id, change)

    async def mark_error(self, item_id: str, error: str) -> QueueItem:
        def change(item: QueueItem) -> bool:
            self._require_pending(item)
            item.status = QueueStatus.error
            item.error = error
            return True

        return await self._transition(item_id, change)

    @staticmethod
    def _require_pending(item: QueueItem) -> None:
        if item.status != QueueStatus.pending:
            raise QueueTransitionError(f"Queue item {item.id} is {item.status.value}, not pending")
        if item.is_dry_run:
            raise QueueTransitionError(f"Queue item {item.id} is a dry-run preview")

    async def due_items(self, now: Optional[datetime] = None, limit: Optional[int] = None,
                        rule_id: Optional[str] = None) -> List[QueueItem]:
        return await self.store.due(now or self._clock(), limit=limit, rule_id=rule_id)

    async def prune(self, now: Optional[datetime] = None) -> int:
        """Drop finished entries older than the retention period"""
        cutoff = (now or self._clock()) - timedelta(days=self.settings.queue.retention_days)
        removed = await self.store.prune(cutoff, TERMINAL_STATUSES)
        if removed:
            logger.info(f"Pruned {removed} finished queue items older than {cutoff.date()}")
        return removed
