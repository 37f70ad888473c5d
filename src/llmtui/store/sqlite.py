"""SQLite-backed persistence for sessions, messages, summaries, tool calls and caches."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from llmtui.errors import LlmTuiError, PersistenceError
from llmtui.models.config import StoreConfig
from llmtui.models.message import Message, Summary, now_ms
from llmtui.models.session import SessionInfo
from llmtui.models.tool import FileContextEntry, ToolCall, ToolCallState, ToolResultEntry
from llmtui.store.pool import StorePool, open_connection

# ── Exceptions ─────────────────────────────────────────────────────────────────


class StoreError(LlmTuiError):
    """Base class for store errors."""


class SessionNotFoundError(StoreError):
    """Raised when a session_id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class DuplicateIDError(StoreError):
    """Raised when attempting to insert a record with a duplicate primary key."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


# ── Batches ────────────────────────────────────────────────────────────────────


@dataclass
class WriteBatch:
    """Everything one save writes for a session, committed in a single transaction."""

    session_id: str
    next_ordinal: int
    messages: list[Message] = field(default_factory=list)
    summaries: list[Summary] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    file_entries: list[FileContextEntry] = field(default_factory=list)
    tool_results: list[ToolResultEntry] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (
            self.messages
            or self.summaries
            or self.tool_calls
            or self.file_entries
            or self.tool_results
        )


@dataclass
class StoredSession:
    """A session's full persisted state, as read back by :meth:`SqliteStore.load_session`."""

    info: SessionInfo
    next_ordinal: int
    messages: list[Message]
    summaries: list[Summary]
    tool_calls: list[ToolCall]
    file_entries: list[FileContextEntry]
    tool_results: list[ToolResultEntry]


# ── SqliteStore ────────────────────────────────────────────────────────────────


class SqliteStore:
    """
    SQLite-backed session store.

    Session state lives in memory while a session is open; this store is the
    durable copy. Saves are batched: :meth:`save_batch` upserts every changed
    row of a session in one transaction and rolls back on any failure.

    When a ``StorePool`` is supplied the store borrows a shared connection
    from it, and ``close()`` leaves the connection open (the pool owns it).

    Usage::

        pool = StorePool()
        store = SqliteStore(StoreConfig(db_path="/tmp/chat.db"), pool=pool)
        await store.initialize()
        info = await store.create_session("sess_01", name="scratch")
        ...
        await pool.close_all()
    """

    def __init__(self, config: StoreConfig, pool: StorePool | None = None) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger("llmtui.store")

    async def initialize(self) -> None:
        """
        Open (or borrow) a database connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        if self._pool is not None:
            conn = await self._pool.acquire(self._config)
        else:
            conn = await open_connection(self._config)

        schema = (Path(__file__).parent / "schema.sql").read_text()
        async with self._write_lock():
            await conn.executescript(schema)
            await conn.commit()

        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Release the connection (no-op for pool-managed connections)."""
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    def _write_lock(self) -> asyncio.Lock:
        # Pooled stores share one connection, so they must share its lock too.
        if self._pool is not None:
            return self._pool.write_lock(self._db_path)
        return self._lock

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Hold the write lock for one transaction, committing on success.

        Any exception, cancellation included, rolls the transaction back
        before it propagates, so the shared connection is never left with
        a half-written transaction open.
        """
        conn = self._conn_or_raise()
        async with self._write_lock():
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await asyncio.shield(conn.rollback())
                raise

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(
        self,
        id: str,
        *,
        name: str | None = None,
        project: str | None = None,
        provider: str = "ollama",
        model: str = "",
    ) -> SessionInfo:
        """
        Insert a new session row.

        Args:
            id: ULID-based session ID (e.g. ``sess_01JXYZ...``).
            name: Optional human-readable name.
            project: Optional project tag used to group sessions.
            provider: Active provider name.
            model: Active model string.

        Raises:
            DuplicateIDError: If a session with this ID already exists.
        """
        info = SessionInfo(id=id, name=name, project=project, provider=provider, model=model)
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO sessions
                        (id, name, project, created_at, updated_at, provider, model, next_ordinal)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                    """,
                    (
                        info.id,
                        info.name,
                        info.project,
                        info.created_at,
                        info.updated_at,
                        info.provider,
                        info.model,
                    ),
                )
        except aiosqlite.IntegrityError as exc:
            raise DuplicateIDError(id) from exc
        return info

    async def update_session(
        self,
        session_id: str,
        *,
        name: str | None = None,
        project: str | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> SessionInfo:
        """
        Update metadata fields that are not None and bump ``updated_at``.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        set_clauses = ["updated_at = ?"]
        params: list[Any] = [now_ms()]
        for column, value in (
            ("name", name),
            ("project", project),
            ("provider", provider),
            ("model", model),
        ):
            if value is not None:
                set_clauses.append(f"{column} = ?")
                params.append(value)
        params.append(session_id)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE sessions SET {', '.join(set_clauses)} WHERE id = ?", params
            )
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)
        return await self.get_session(session_id)

    async def get_session(self, session_id: str) -> SessionInfo:
        """
        Fetch session metadata by ID.

        Raises:
            SessionNotFoundError: If no session with this ID exists.
        """
        conn = self._conn_or_raise()
        async with conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return self._row_to_session(row)

    async def list_sessions(
        self,
        *,
        project: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SessionInfo]:
        """
        List sessions, most recently updated first.

        Args:
            project: Only sessions tagged with this project.
            limit: Maximum number of sessions to return.
            offset: Number of sessions to skip (for pagination).
        """
        conn = self._conn_or_raise()
        where = "WHERE project = ?" if project is not None else ""
        params: list[Any] = [project] if project is not None else []
        params.extend([limit, offset])
        async with conn.execute(
            f"SELECT * FROM sessions {where} ORDER BY updated_at DESC, id DESC LIMIT ? OFFSET ?",
            params,
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_session(r) for r in rows]

    async def delete_session(self, session_id: str) -> None:
        """
        Delete a session and everything it owns.

        Messages, summaries, tool calls and cache rows go with it through
        ``ON DELETE CASCADE``.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)
        self._logger.info("session_deleted", session_id=session_id)

    # ── Batched writes ─────────────────────────────────────────────────────────

    async def save_batch(self, batch: WriteBatch) -> None:
        """
        Upsert every row in *batch* in one transaction.

        Raises:
            PersistenceError: If any statement fails. The transaction is rolled
                back, so the database keeps its previous state.
        """
        sid = batch.session_id
        try:
            async with self._transaction() as conn:
                await self._write_batch(conn, batch)
        except (aiosqlite.Error, SessionNotFoundError) as exc:
            self._logger.error("save_batch_failed", session_id=sid, error=str(exc))
            raise PersistenceError(f"Failed to save session {sid!r}: {exc}") from exc

    async def _write_batch(self, conn: aiosqlite.Connection, batch: WriteBatch) -> None:
        sid = batch.session_id
        cursor = await conn.execute(
            "UPDATE sessions SET updated_at = ?, next_ordinal = MAX(next_ordinal, ?)"
            " WHERE id = ?",
            (now_ms(), batch.next_ordinal, sid),
        )
        if cursor.rowcount == 0:
            raise SessionNotFoundError(sid)
        if batch.messages:
            await conn.executemany(
                """
                INSERT INTO messages
                    (session_id, ordinal, role, content, token_count,
                     compacted, tool_call_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, ordinal) DO UPDATE SET
                    compacted = excluded.compacted
                """,
                [
                    (
                        sid,
                        m.ordinal,
                        m.role,
                        m.content,
                        m.token_count,
                        int(m.compacted),
                        m.tool_call_id,
                        m.created_at,
                    )
                    for m in batch.messages
                ],
            )
        if batch.summaries:
            await conn.executemany(
                """
                INSERT OR IGNORE INTO summaries
                    (session_id, id, range_start, range_end, text, token_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        sid,
                        s.id,
                        s.range_start,
                        s.range_end,
                        s.text,
                        s.token_count,
                        s.created_at,
                    )
                    for s in batch.summaries
                ],
            )
        if batch.tool_calls:
            await conn.executemany(
                """
                INSERT INTO tool_calls
                    (session_id, id, name, args, state, result, error,
                     partial_output, created_at, resolved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, id) DO UPDATE SET
                    state = excluded.state,
                    result = excluded.result,
                    error = excluded.error,
                    partial_output = excluded.partial_output,
                    resolved_at = excluded.resolved_at
                """,
                [
                    (
                        sid,
                        c.id,
                        c.name,
                        json.dumps(c.args),
                        c.state.value,
                        c.result,
                        c.error,
                        c.partial_output,
                        c.created_at,
                        c.resolved_at,
                    )
                    for c in batch.tool_calls
                ],
            )
        if batch.file_entries:
            await conn.executemany(
                """
                INSERT INTO file_context (session_id, path, content, checksum, read_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(session_id, path) DO UPDATE SET
                    content = excluded.content,
                    checksum = excluded.checksum,
                    read_at = excluded.read_at
                """,
                [(sid, e.path, e.content, e.checksum, e.read_at) for e in batch.file_entries],
            )
        if batch.tool_results:
            await conn.executemany(
                """
                INSERT OR REPLACE INTO tool_results (session_id, call_id, output, created_at)
                VALUES (?, ?, ?, ?)
                """,
                [(sid, r.call_id, r.output, r.created_at) for r in batch.tool_results],
            )

    # ── Loading ────────────────────────────────────────────────────────────────

    async def load_session(self, session_id: str) -> StoredSession:
        """
        Read back a session's complete persisted state.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        conn = self._conn_or_raise()
        async with conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return StoredSession(
            info=self._row_to_session(row),
            next_ordinal=row["next_ordinal"],
            messages=await self.load_messages(session_id),
            summaries=await self.load_summaries(session_id),
            tool_calls=await self.load_tool_calls(session_id),
            file_entries=await self.load_file_context(session_id),
            tool_results=await self.load_tool_results(session_id),
        )

    async def load_messages(self, session_id: str) -> list[Message]:
        """Stored messages for a session, by ordinal."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY ordinal", (session_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            Message(
                session_id=r["session_id"],
                ordinal=r["ordinal"],
                role=r["role"],
                content=r["content"],
                token_count=r["token_count"],
                compacted=bool(r["compacted"]),
                tool_call_id=r["tool_call_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def load_summaries(self, session_id: str) -> list[Summary]:
        """Stored summaries for a session, by range start."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM summaries WHERE session_id = ? ORDER BY range_start", (session_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            Summary(
                id=r["id"],
                session_id=r["session_id"],
                range_start=r["range_start"],
                range_end=r["range_end"],
                text=r["text"],
                token_count=r["token_count"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def load_tool_calls(self, session_id: str) -> list[ToolCall]:
        """Stored tool calls for a session, oldest first."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM tool_calls WHERE session_id = ? ORDER BY created_at, id",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            ToolCall(
                id=r["id"],
                session_id=r["session_id"],
                name=r["name"],
                args=json.loads(r["args"]),
                state=ToolCallState(r["state"]),
                result=r["result"],
                error=r["error"],
                partial_output=r["partial_output"],
                created_at=r["created_at"],
                resolved_at=r["resolved_at"],
            )
            for r in rows
        ]

    async def load_file_context(self, session_id: str) -> list[FileContextEntry]:
        """Stored file snapshots for a session, oldest read first."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM file_context WHERE session_id = ? ORDER BY read_at, path",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            FileContextEntry(
                session_id=r["session_id"],
                path=r["path"],
                content=r["content"],
                checksum=r["checksum"],
                read_at=r["read_at"],
            )
            for r in rows
        ]

    async def load_tool_results(self, session_id: str) -> list[ToolResultEntry]:
        """Stored generic tool outputs for a session, oldest first."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM tool_results WHERE session_id = ? ORDER BY created_at, call_id",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            ToolResultEntry(
                session_id=r["session_id"],
                call_id=r["call_id"],
                output=r["output"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _row_to_session(self, row: aiosqlite.Row) -> SessionInfo:
        return SessionInfo(
            id=row["id"],
            name=row["name"],
            project=row["project"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            provider=row["provider"],
            model=row["model"],
        )
