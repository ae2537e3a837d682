import os
import logging
from pathlib import Path
import aiosqlite
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from culler.api.schemas.queue import QueueItem, QueueStatus
from culler.worker.queue import QueueStore, QueueItemNotFound

logger = logging.getLogger(__name__)

# Global database connection
_db: Optional[aiosqlite.Connection] = None


async def get_db() -> aiosqlite.Connection:
    """Get database connection"""
    global _db
    if _db is None:
        await init_db()
    return _db


async def init_db(db_path: Optional[str] = None) -> None:
    """Initialize database with schema"""
    global _db

    path = Path(db_path or os.getenv("DB_PATH", "/data/db/culler.db"))
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        _db = await aiosqlite.connect(str(path), timeout=30.0)
        await _db.execute("PRAGMA journal_mode = WAL")
        await create_tables()
        logger.info(f"Database initialized at {path}")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_db() -> None:
    """Close database connection"""
    global _db
    if _db:
        await _db.close()
        _db = None
        logger.info("Database connection closed")


async def create_tables() -> None:
    """Create all database tables"""
    await _db.execute("""
        CREATE TABLE IF NOT EXISTS cl_queue (
            id TEXT PRIMARY KEY,
            media_key TEXT NOT NULL,
            rule_id TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            action_at TEXT NOT NULL,
            is_dry_run INTEGER NOT NULL DEFAULT 0,
            item_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    await _db.execute("CREATE INDEX IF NOT EXISTS idx_queue_status_action ON cl_queue(status, action_at)")
    await _db.execute("CREATE INDEX IF NOT EXISTS idx_queue_media ON cl_queue(media_key)")
    await _db.execute("CREATE INDEX IF NOT EXISTS idx_queue_rule ON cl_queue(rule_id)")
    await _db.commit()


def _ts(moment: datetime) -> str:
    """Fixed-width UTC timestamp so text ordering matches time ordering"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


class SqliteQueueStore(QueueStore):
    """Queue items in SQLite. The full item is kept as JSON; columns exist for filtering."""

    async def _conn(self) -> aiosqlite.Connection:
        return await get_db()

    def _row(self, item: QueueItem) -> tuple:
        return (
            item.id,
            item.media_key,
            item.rule_id,
            item.status.value,
            _ts(item.action_at),
            1 if item.is_dry_run else 0,
            item.model_dump_json(),
            _ts(item.created_at),
            _ts(item.updated_at),
        )

    async def add(self, item: QueueItem) -> None:
        db = await self._conn()
        await db.execute(
            """
            INSERT INTO cl_queue
                (id, media_key, rule_id, status, action_at, is_dry_run, item_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._row(item),
        )
        await db.commit()

    async def update(self, item: QueueItem) -> None:
        db = await self._conn()
        row = self._row(item)
        cursor = await db.execute(
            """
            UPDATE cl_queue
            SET media_key = ?, rule_id = ?, status = ?, action_at = ?, is_dry_run = ?,
                item_json = ?, created_at = ?, updated_at = ?
            WHERE id = ?
            """,
            row[1:] + (row[0],),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise QueueItemNotFound(item.id)

    async def get(self, item_id: str) -> Optional[QueueItem]:
        db = await self._conn()
        async with db.execute("SELECT item_json FROM cl_queue WHERE id = ?", (item_id,)) as cursor:
            row = await cursor.fetchone()
        return QueueItem.model_validate_json(row[0]) if row else None

    async def remove(self, item_id: str) -> None:
        db = await self._conn()
        await db.execute("DELETE FROM cl_queue WHERE id = ?", (item_id,))
        await db.commit()

    async def list(self, status=None, rule_id=None, is_dry_run=None, media_key=None, limit=None, offset=0):
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(QueueStatus(status).value)
        if rule_id is not None:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        if is_dry_run is not None:
            clauses.append("is_dry_run = ?")
            params.append(1 if is_dry_run else 0)
        if media_key is not None:
            clauses.append("media_key = ?")
            params.append(media_key)
        return await self._select(clauses, params, limit, offset)

    async def due(self, now, limit=None, rule_id=None):
        clauses = ["status = ?", "is_dry_run = 0", "action_at <= ?"]
        params = [QueueStatus.pending.value, _ts(now)]
        if rule_id is not None:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        return await self._select(clauses, params, limit, 0)

    async def _select(self, clauses: List[str], params: list, limit: Optional[int], offset: int) -> List[QueueItem]:
        query = "SELECT item_json FROM cl_queue"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY action_at ASC, created_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params = params + [limit, offset]
        elif offset:
            query += " LIMIT -1 OFFSET ?"
            params = params + [offset]

        db = await self._conn()
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [QueueItem.model_validate_json(row[0]) for row in rows]

    async def prune(self, before: datetime, statuses: Iterable[QueueStatus]) -> int:
        statuses = [QueueStatus(s).value for s in statuses]
        if not statuses:
            return 0
        placeholders = ", ".join("?" for _ in statuses)
        db = await self._conn()
        cursor = await db.execute(
            f"DELETE FROM cl_queue WHERE status IN ({placeholders}) AND updated_at < ?",
            statuses + [_ts(before)],
        )
        await db.commit()
        return cursor.rowcount
