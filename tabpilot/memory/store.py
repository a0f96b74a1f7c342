import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from tabpilot.logging import get_logger
from tabpilot.memory.domain import normalize_domain
from tabpilot.memory.models import MemoryDraft, MemoryRecord

_logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY,
    domain TEXT NOT NULL,
    task_description TEXT NOT NULL,
    tool_sequence TEXT NOT NULL DEFAULT '[]',  -- JSON array of "tool | input" steps
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_memories_domain ON memories(domain, created_at DESC);
"""

_SQL_FIND_SIMILAR = """
    SELECT id FROM memories
    WHERE domain = ? AND lower(task_description) = lower(?)
    ORDER BY created_at DESC
    LIMIT 1
"""

_SQL_INSERT = "INSERT INTO memories (domain, task_description, tool_sequence, created_at) VALUES (?, ?, ?, ?)"

_SQL_UPDATE = """
    UPDATE memories
    SET task_description = ?, tool_sequence = ?, created_at = ?
    WHERE id = ?
"""

_SQL_BY_DOMAIN = "SELECT * FROM memories WHERE domain = ? ORDER BY created_at DESC, id DESC"
_SQL_LIST_ALL = "SELECT * FROM memories ORDER BY created_at DESC, id DESC LIMIT ?"
_SQL_GET = "SELECT * FROM memories WHERE id = ?"
_SQL_DELETE = "DELETE FROM memories WHERE id = ?"
_SQL_CLEAR = "DELETE FROM memories"
_SQL_COUNT = "SELECT COUNT(*) FROM memories"


def _row_to_record(row: aiosqlite.Row) -> MemoryRecord:
    data = dict(row)
    data["tool_sequence"] = json.loads(data["tool_sequence"] or "[]")
    return MemoryRecord.model_validate(data)


class MemoryStore:
    """Per-domain tool sequences that worked before.

    The engine only calls ``store`` and ``query_by_domain``; the rest is for
    the CLI and tests.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        if self._conn is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        # Several sessions may write through one store.
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        await self._conn.execute("PRAGMA busy_timeout=30000;")
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()
        _logger.debug("Memory store opened at %s", self.db_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Memory store is not connected")
        return self._conn

    async def store(self, record: MemoryDraft | dict[str, Any]) -> int:
        draft = record if isinstance(record, MemoryDraft) else MemoryDraft.model_validate(record)
        domain = normalize_domain(draft.domain)
        if not domain:
            raise ValueError(f"Invalid domain: {draft.domain!r}")

        now = datetime.now(UTC).isoformat()
        sequence = json.dumps(draft.tool_sequence)

        rows = await self.conn.execute_fetchall(_SQL_FIND_SIMILAR, (domain, draft.task_description))
        if rows:
            memory_id = rows[0]["id"]
            await self.conn.execute(_SQL_UPDATE, (draft.task_description, sequence, now, memory_id))
            await self.conn.commit()
            _logger.info("Updated memory %d for %s", memory_id, domain)
            return memory_id

        cursor = await self.conn.execute(_SQL_INSERT, (domain, draft.task_description, sequence, now))
        await self.conn.commit()
        _logger.info("Stored memory %d for %s", cursor.lastrowid, domain)
        return cursor.lastrowid

    async def query_by_domain(self, domain: str) -> list[MemoryRecord]:
        rows = await self.conn.execute_fetchall(_SQL_BY_DOMAIN, (normalize_domain(domain),))
        return [_row_to_record(r) for r in rows]

    async def get(self, memory_id: int) -> MemoryRecord | None:
        rows = await self.conn.execute_fetchall(_SQL_GET, (memory_id,))
        return _row_to_record(rows[0]) if rows else None

    async def list_all(self, limit: int = 100) -> list[MemoryRecord]:
        rows = await self.conn.execute_fetchall(_SQL_LIST_ALL, (limit,))
        return [_row_to_record(r) for r in rows]

    async def count(self) -> int:
        rows = await self.conn.execute_fetchall(_SQL_COUNT)
        return rows[0][0]

    async def delete(self, memory_id: int) -> bool:
        cursor = await self.conn.execute(_SQL_DELETE, (memory_id,))
        await self.conn.commit()
        return cursor.rowcount > 0

    async def clear(self) -> int:
        cursor = await self.conn.execute(_SQL_CLEAR)
        await self.conn.commit()
        _logger.info("Cleared %d memories", cursor.rowcount)
        return cursor.rowcount
