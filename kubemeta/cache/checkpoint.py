"""SQLite checkpoint for the metadata caches.

Feature-flagged: only active when ``checkpoint.enabled=true``.  Lets a
restarted process serve enrichment for identities whose pods are already
gone, which a fresh list/watch could never recover.

Write model:
- WAL mode + single writer (serialised via asyncio).
- Every ``interval_seconds`` all live cache entries are upserted; an
  existing row keeps its original ``created_at``.
- Rows older than the cache TTL are pruned after each write.
- Failures are logged and counted; the in-memory caches stay authoritative.

Schema (one table per cache)::

    CREATE TABLE pod_cache (
        id         TEXT PRIMARY KEY,
        val        TEXT,       -- JSON
        created_at INTEGER     -- unix seconds
    );
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from collections.abc import Callable
from typing import Any, Final

import aiosqlite

from kubemeta.cache.bounded_cache import BoundedCache
from kubemeta.cache.store import MetadataStore
from kubemeta.models.metadata import IdentityRecord
from kubemeta.observability.logging import get_logger
from kubemeta.observability.metrics import checkpoint_failures_total, checkpoint_rows_written_total

_logger = get_logger("checkpoint")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_TABLES: Final[tuple[str, ...]] = ("pod_cache", "id_cache", "namespace_cache")

_SCHEMA_DDL: Final[str] = "\n".join(
    f"""
CREATE TABLE IF NOT EXISTS {table} (
    id         TEXT PRIMARY KEY,
    val        TEXT    NOT NULL,
    created_at INTEGER NOT NULL
);
"""
    for table in _TABLES
)

_DEFAULT_INTERVAL_SECONDS: Final[float] = 60.0


class CheckpointStore:
    """Async SQLite persistence for a :class:`MetadataStore`.

    Args:
        db_path: Path to the SQLite database file.
        ttl_seconds: Rows older than this are pruned and not restored;
            ``None`` keeps rows forever.
        interval_seconds: Pause between background writes.
        clock: Wall clock returning unix seconds; injectable for tests.
    """

    def __init__(
        self,
        db_path: str,
        ttl_seconds: float | None,
        interval_seconds: float = _DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._ttl = ttl_seconds
        self._interval = interval_seconds
        self._clock = clock
        self._db: aiosqlite.Connection | None = None
        self._store: MetadataStore | None = None
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the database and apply the schema."""
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await self._db.executescript(_SCHEMA_DDL)
        await self._db.commit()
        _logger.info("checkpoint_opened", db_path=self._db_path)

    def start(self, store: MetadataStore) -> None:
        """Start the background write loop for ``store``."""
        self._store = store
        self._task = asyncio.create_task(self._loop(), name="checkpoint")

    async def close(self) -> None:
        """Cancel the write loop, write a final checkpoint, and close the database."""
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        if self._store is not None and self._db is not None:
            try:
                await self.write(self._store)
            except Exception as exc:
                checkpoint_failures_total.labels(operation="write").inc()
                _logger.error("checkpoint_final_write_error", error=str(exc))

        if self._db:
            await self._db.close()
            self._db = None

        _logger.info("checkpoint_closed", db_path=self._db_path)

    # ------------------------------------------------------------------
    # Restore / write / prune
    # ------------------------------------------------------------------

    async def restore(self, store: MetadataStore) -> int:
        """Load unexpired rows into ``store``; return the number of entries restored."""
        if self._db is None:
            return 0
        cutoff = self._cutoff()
        restored = 0
        for table, cache in self._table_caches(store):
            rows = await self._db.execute_fetchall(
                f"SELECT id, val FROM {table} WHERE created_at >= ? ORDER BY created_at ASC",
                (cutoff,),
            )
            for key, raw in rows:
                try:
                    value: Any = json.loads(raw)
                except json.JSONDecodeError as exc:
                    _logger.error("checkpoint_row_parse_error", table=table, id=key, error=str(exc))
                    continue
                if table == "id_cache":
                    value = IdentityRecord.from_dict(value)
                cache.set(key, value)
                restored += 1
        _logger.info("checkpoint_restored", entries=restored)
        return restored

    async def write(self, store: MetadataStore) -> None:
        """Upsert every live cache entry, then prune expired rows."""
        if self._db is None:
            return
        now = int(self._clock())
        for table, cache in self._table_caches(store):
            rows = [
                (str(key), json.dumps(_encode(value), default=str), now)
                for key, value in cache.snapshot().items()
            ]
            if not rows:
                continue
            await self._db.executemany(
                f"""
                INSERT INTO {table} (id, val, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET val = excluded.val
                """,
                rows,
            )
            checkpoint_rows_written_total.labels(table=table).inc(len(rows))
        await self.prune()
        await self._db.commit()

    async def prune(self) -> None:
        """Delete rows older than the TTL."""
        if self._db is None or self._ttl is None:
            return
        cutoff = self._cutoff()
        for table in _TABLES:
            await self._db.execute(f"DELETE FROM {table} WHERE created_at < ?", (cutoff,))

    async def count(self, table: str) -> int:
        """Return the number of rows in ``table``."""
        if self._db is None or table not in _TABLES:
            return 0
        rows = await self._db.execute_fetchall(f"SELECT COUNT(*) FROM {table}")
        return int(list(rows)[0][0])

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if self._store is None:
                continue
            try:
                await self.write(self._store)
            except Exception as exc:
                checkpoint_failures_total.labels(operation="write").inc()
                _logger.error("checkpoint_write_error", error=str(exc))

    def _cutoff(self) -> int:
        if self._ttl is None:
            return 0
        return int(self._clock() - self._ttl)

    @staticmethod
    def _table_caches(store: MetadataStore) -> list[tuple[str, BoundedCache[str, Any]]]:
        return [("pod_cache", store.pods), ("id_cache", store.identities), ("namespace_cache", store.namespaces)]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _encode(value: Any) -> Any:
    if isinstance(value, IdentityRecord):
        return value.to_dict()
    return value
