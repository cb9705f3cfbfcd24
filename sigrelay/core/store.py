from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional, Sequence, Tuple

import aiosqlite

from sigrelay.utils import codec
from .proto import now_ms

log = logging.getLogger("sigrelay.store")

NowFn = Callable[[], int]
Key = Tuple[str, ...]

SCHEMA = """
CREATE TABLE IF NOT EXISTS entries(
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    expires_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS entries_expires_at ON entries(expires_at);
"""


def _encode_key(key: Sequence[str]) -> str:
    if not key:
        raise ValueError("key must have at least one part")
    for part in key:
        if not isinstance(part, str):
            raise TypeError("key parts must be strings")
    return codec.key_text(key)


def _prefix_range(prefix: Sequence[str]) -> Tuple[str, str]:
    """Half-open text range holding every key strictly under ``prefix``.

    '["messages","bob"]' becomes '["messages","bob",' .. '["messages","bob"-',
    so ("messages", "bobby", ...) stays outside.
    """
    lo = _encode_key(prefix)[:-1] + ","
    hi = lo[:-1] + chr(ord(lo[-1]) + 1)
    return lo, hi


class DurableQueue:
    """SQLite-backed key/value store where every entry carries its own TTL.

    Expired entries are invisible to reads as soon as their deadline passes;
    ``purge_expired`` (run periodically by ``run_sweeper``) removes the rows.
    """

    def __init__(self, db: aiosqlite.Connection, now: NowFn = now_ms) -> None:
        self._db = db
        self.now = now

    @classmethod
    async def open(cls, path: str = ":memory:", now: NowFn = now_ms) -> "DurableQueue":
        db = await aiosqlite.connect(path)
        await db.executescript(SCHEMA)
        await db.commit()
        log.debug("Queue store opened at %s", path)
        return cls(db, now=now)

    async def close(self) -> None:
        await self._db.close()

    # ------------------------------------------------------------------
    # Entry operations
    # ------------------------------------------------------------------

    async def enqueue(self, key: Sequence[str], value: Any, ttl_ms: int) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        expires_at = self.now() + int(ttl_ms)
        await self._db.execute(
            "INSERT OR REPLACE INTO entries(key, value, expires_at) VALUES(?,?,?)",
            (_encode_key(key), codec.dumps(value), expires_at),
        )
        await self._db.commit()

    async def get(self, key: Sequence[str]) -> Optional[Any]:
        cur = await self._db.execute(
            "SELECT value FROM entries WHERE key = ? AND expires_at > ?",
            (_encode_key(key), self.now()),
        )
        row = await cur.fetchone()
        await cur.close()
        return codec.loads(row[0]) if row else None

    async def scan_prefix(
        self, prefix: Sequence[str], *, batch_size: int = 64
    ) -> AsyncIterator[Tuple[Key, Any]]:
        """Yield live ``(key, value)`` pairs under ``prefix`` in key order.

        Rows are fetched a page at a time and no cursor is held across a
        yield, so callers may delete entries while iterating.
        """
        lo, hi = _prefix_range(prefix)
        after = None
        while True:
            if after is None:
                sql = "SELECT key, value FROM entries WHERE key >= ? AND key < ? AND expires_at > ? ORDER BY key LIMIT ?"
                params = (lo, hi, self.now(), batch_size)
            else:
                sql = "SELECT key, value FROM entries WHERE key > ? AND key < ? AND expires_at > ? ORDER BY key LIMIT ?"
                params = (after, hi, self.now(), batch_size)
            cur = await self._db.execute(sql, params)
            rows = await cur.fetchall()
            await cur.close()
            for key_text, value_text in rows:
                yield tuple(codec.loads(key_text)), codec.loads(value_text)
            if len(rows) < batch_size:
                return
            after = rows[-1][0]

    async def delete(self, key: Sequence[str]) -> None:
        await self._db.execute("DELETE FROM entries WHERE key = ?", (_encode_key(key),))
        await self._db.commit()

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def purge_expired(self) -> int:
        cur = await self._db.execute("DELETE FROM entries WHERE expires_at <= ?", (self.now(),))
        removed = cur.rowcount
        await cur.close()
        await self._db.commit()
        if removed:
            log.debug("Purged %d expired entr%s", removed, "y" if removed == 1 else "ies")
        return removed

    async def run_sweeper(self, interval_s: float = 5.0) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.purge_expired()
            except Exception:
                log.exception("expiry sweep failed")


__all__ = ["DurableQueue", "Key"]
