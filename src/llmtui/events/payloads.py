"""Typed payload definitions for each SessionEvent.

Usage example::

    from llmtui.events.bus import EventBus, SessionEvent
    from llmtui.events.payloads import CompactionCompletedPayload

    def on_compaction(event: SessionEvent, payload: CompactionCompletedPayload) -> None:
        print(f"{payload['tokens_before']} → {payload['tokens_after']} tokens")

    bus.subscribe(SessionEvent.COMPACTION_COMPLETED, on_compaction)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionCreatedPayload(TypedDict):
    """Payload for ``SESSION_CREATED`` and ``SESSION_LOADED``."""

    session_id: str
    provider: str
    model: str


class SessionUpdatedPayload(TypedDict):
    """Payload for ``SESSION_UPDATED`` (rename or provider switch)."""

    session_id: str
    name: str | None
    provider: str


class SessionClosedPayload(TypedDict):
    """Payload for ``SESSION_CLOSED``."""

    session_id: str


# ── Message log ───────────────────────────────────────────────────────────────


class MessageAppendedPayload(TypedDict):
    """Payload for ``MESSAGE_APPENDED``."""

    session_id: str
    ordinal: int
    role: str
    token_count: int
    total_tokens: int
    """Accountant total after the append."""


# ── Compaction lifecycle ──────────────────────────────────────────────────────


class CompactionTriggeredPayload(TypedDict):
    """Payload for ``COMPACTION_TRIGGERED``."""

    session_id: str
    tokens: int
    manual: bool


class CompactionCompletedPayload(TypedDict):
    """Payload for ``COMPACTION_COMPLETED``: ``CompactionResult.model_dump()``."""

    session_id: str
    summary: dict | None
    compacted_message_count: int
    tokens_before: int
    tokens_after: int
    elapsed_ms: float


class CompactionFailedPayload(TypedDict):
    """Payload for ``COMPACTION_FAILED``."""

    session_id: str
    error: str


# ── Tool calls ────────────────────────────────────────────────────────────────


class ToolCallStateChangedPayload(TypedDict):
    """Payload for ``TOOL_CALL_STATE_CHANGED``."""

    session_id: str
    tool_call_id: str
    name: str
    state: str
    error: NotRequired[str]


# ── Persistence ───────────────────────────────────────────────────────────────


class PersistenceSavedPayload(TypedDict):
    """Payload for ``PERSISTENCE_SAVED``."""

    session_id: str
    rows: int


class PersistenceFailedPayload(TypedDict):
    """Payload for ``PERSISTENCE_FAILED``."""

    session_id: str
    error: str


class StateRepairedPayload(TypedDict):
    """Payload for ``STATE_REPAIRED``."""

    session_id: str
    tracked: int
    recomputed: int
