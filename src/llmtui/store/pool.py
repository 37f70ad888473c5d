"""
Connection opening and sharing for SqliteStore.

``open_connection`` applies the PRAGMAs every llmtui database needs.
``StorePool`` keeps one such connection per database file so the session
picker and any number of open chat sessions share it::

    pool = StorePool()
    picker = SqliteStore(config.store, pool=pool)
    chat = SqliteStore(config.store, pool=pool)   # same file, same connection
    ...
    await pool.close_all()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import aiosqlite
import structlog

from llmtui.models.config import StoreConfig

_logger = structlog.get_logger("llmtui.store.pool")


def resolve_db_path(db_path: str) -> str:
    """Absolute form of *db_path* with ``~`` expanded; the pool's key."""
    return str(Path(db_path).expanduser().resolve())


async def open_connection(config: StoreConfig) -> aiosqlite.Connection:
    """
    Open the database at ``config.db_path``, creating its directory.

    Rows come back as ``aiosqlite.Row``; foreign keys are enforced so
    deleting a session cascades to everything it owns.
    """
    path = resolve_db_path(config.db_path)
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(path, timeout=config.connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        pragmas = ["foreign_keys=ON", "synchronous=NORMAL"]
        if config.wal_mode:
            pragmas.insert(0, "journal_mode=WAL")
        for pragma in pragmas:
            await conn.execute(f"PRAGMA {pragma}")
    except aiosqlite.Error:
        await conn.close()
        raise
    return conn


@dataclass
class _Shared:
    conn: aiosqlite.Connection
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class StorePool:
    """
    One shared connection per database file, for a single event loop.

    Each entry carries a write lock that every ``SqliteStore`` write holds
    until it commits or rolls back, so two sessions writing at once never
    interleave statements inside one transaction.
    """

    def __init__(self) -> None:
        self._shared: dict[str, _Shared] = {}
        self._opening = asyncio.Lock()

    async def acquire(self, config: StoreConfig) -> aiosqlite.Connection:
        """Return the shared connection for ``config.db_path``, opening it once."""
        path = resolve_db_path(config.db_path)
        async with self._opening:
            entry = self._shared.get(path)
            if entry is None:
                entry = _Shared(await open_connection(config))
                self._shared[path] = entry
                _logger.debug("pool_connection_opened", db_path=path)
        return entry.conn

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        Raises:
            KeyError: If no connection was acquired for *db_path*.
        """
        return self._shared[resolve_db_path(db_path)].write_lock

    def __contains__(self, db_path: str) -> bool:
        return resolve_db_path(db_path) in self._shared

    async def close_all(self) -> None:
        """Close every shared connection."""
        while self._shared:
            path, entry = self._shared.popitem()
            await entry.conn.close()
            _logger.debug("pool_connection_closed", db_path=path)
