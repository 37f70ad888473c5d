"""Session-scoped cache of tool outputs and file snapshots."""

from __future__ import annotations

from collections import OrderedDict

import structlog

from llmtui.models.tool import FileContextEntry, ToolResultEntry

CacheEntry = FileContextEntry | ToolResultEntry


class ToolResultCache:
    """
    Tool outputs keyed by ``(session_id, key)``.

    Keys are the sandbox-relative path for :class:`FileContextEntry` records
    and the tool call id for :class:`ToolResultEntry` records. Putting an
    existing key replaces the entry and moves it to the end of the session's
    order.

    Entries are never invalidated when the underlying file changes; a fresh
    ``read`` of the same path is the only thing that supersedes a snapshot.
    """

    def __init__(self) -> None:
        self._entries: dict[str, OrderedDict[str, CacheEntry]] = {}
        self._dirty: dict[str, set[str]] = {}
        self._logger = structlog.get_logger("llmtui.tools.cache")

    def put(self, session_id: str, key: str, entry: CacheEntry) -> None:
        if entry.session_id != session_id:
            raise ValueError(
                f"Cache entry for session {entry.session_id!r} put under {session_id!r}"
            )
        bucket = self._entries.setdefault(session_id, OrderedDict())
        bucket.pop(key, None)
        bucket[key] = entry
        self._dirty.setdefault(session_id, set()).add(key)
        self._logger.debug("cache_put", session_id=session_id, key=key, kind=type(entry).__name__)

    def get(self, session_id: str, key: str) -> CacheEntry | None:
        return self._entries.get(session_id, {}).get(key)

    def all_for(self, session_id: str) -> list[CacheEntry]:
        """Every entry for *session_id*, oldest put first."""
        return list(self._entries.get(session_id, {}).values())

    def file_entries(self, session_id: str) -> list[FileContextEntry]:
        """File snapshots for *session_id*, oldest read first."""
        return [e for e in self.all_for(session_id) if isinstance(e, FileContextEntry)]

    def load(
        self,
        session_id: str,
        file_entries: list[FileContextEntry],
        tool_results: list[ToolResultEntry],
    ) -> None:
        """Replace the session's entries with persisted ones (not marked dirty)."""
        merged: list[tuple[int, str, CacheEntry]] = [
            (e.read_at, e.path, e) for e in file_entries
        ]
        merged.extend((r.created_at, r.call_id, r) for r in tool_results)
        merged.sort(key=lambda item: item[0])
        self._entries[session_id] = OrderedDict((key, entry) for _, key, entry in merged)
        self._dirty.pop(session_id, None)

    def pending_writes(
        self, session_id: str
    ) -> tuple[list[FileContextEntry], list[ToolResultEntry]]:
        """Entries put since the last :meth:`mark_synced`."""
        bucket = self._entries.get(session_id, {})
        files: list[FileContextEntry] = []
        results: list[ToolResultEntry] = []
        for key in self._dirty.get(session_id, set()):
            entry = bucket.get(key)
            if isinstance(entry, FileContextEntry):
                files.append(entry)
            elif isinstance(entry, ToolResultEntry):
                results.append(entry)
        return files, results

    def mark_synced(self, session_id: str, entries: list[CacheEntry]) -> None:
        """Clear dirty flags for *entries* that are still the current value of their key."""
        dirty = self._dirty.get(session_id)
        if not dirty:
            return
        bucket = self._entries.get(session_id, {})
        for entry in entries:
            key = entry.path if isinstance(entry, FileContextEntry) else entry.call_id
            if bucket.get(key) == entry:
                dirty.discard(key)

    def drop(self, session_id: str) -> None:
        """Forget everything cached for *session_id*."""
        self._entries.pop(session_id, None)
        self._dirty.pop(session_id, None)
