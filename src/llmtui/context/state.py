"""Per-session mutable state shared by the session's components."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from llmtui.events.bus import EventBus, SessionEvent
from llmtui.models.message import Message, Role
from llmtui.models.tool import ToolCall
from llmtui.store.log import Draft, MessageStore
from llmtui.tokens.accountant import TokenAccountant
from llmtui.tools.cache import ToolResultCache


class SessionContext:
    """
    Everything one open session owns besides its collaborators.

    There is exactly one ``SessionContext`` per open session and no
    module-level state, so several sessions can be open in one process.

    Locks and flags:

    - ``lock`` serializes mutation of the message log with saves and with
      the compactor's commit.
    - ``compacting`` / ``compaction_task`` mark the single in-flight compaction.
    - ``tool_lock`` admits one tool call past ``proposed`` at a time, in
      arrival order; ``executing_task`` is the running capability, if any.
    - ``stream_cancel`` is set by the user to stop the current response.
    """

    def __init__(
        self,
        session_id: str,
        *,
        event_bus: EventBus | None = None,
        cache: ToolResultCache | None = None,
        token_encoding: str = "heuristic",
    ) -> None:
        self.session_id = session_id
        self.log = MessageStore(session_id)
        self.accountant = TokenAccountant(self.log, encoding=token_encoding)
        self.cache = cache or ToolResultCache()
        self.event_bus = event_bus or EventBus()
        self.lock = asyncio.Lock()
        self.tool_lock = asyncio.Lock()
        self.compacting = False
        self.compaction_task: asyncio.Task[Any] | None = None
        self.executing_task: asyncio.Task[Any] | None = None
        self.stream_cancel = asyncio.Event()
        self.unsynced = False
        self.tool_calls: dict[str, ToolCall] = {}
        self._dirty_calls: set[str] = set()
        self.logger = structlog.get_logger("llmtui.session").bind(session_id=session_id)

    # ── Message log ────────────────────────────────────────────────────────────

    async def append_message(
        self, role: Role, content: str, *, tool_call_id: str | None = None
    ) -> Message:
        """Append a finalized message under the session lock and account for it."""
        async with self.lock:
            tokens = self.accountant.estimate(content)
            ordinal = self.log.append(role, content, token_count=tokens, tool_call_id=tool_call_id)
            self.accountant.add(tokens)
            message = self.log.get(ordinal)
        self._announce(message)
        return message

    async def finalize_draft(self, draft: Draft) -> Message | None:
        """
        Finalize a streamed draft, or discard it if nothing arrived.

        Returns:
            The finalized message, or None when the draft was empty.
        """
        async with self.lock:
            if not draft.text:
                self.log.discard_draft(draft)
                return None
            tokens = self.accountant.estimate(draft.text)
            message = self.log.finalize_draft(draft, token_count=tokens)
            self.accountant.add(tokens)
        self._announce(message)
        return message

    def _announce(self, message: Message) -> None:
        self.logger.debug(
            "message_appended",
            ordinal=message.ordinal,
            role=message.role,
            token_count=message.token_count,
        )
        self.event_bus.publish(
            SessionEvent.MESSAGE_APPENDED,
            {
                "session_id": self.session_id,
                "ordinal": message.ordinal,
                "role": message.role,
                "token_count": message.token_count,
                "total_tokens": self.accountant.total,
            },
        )

    # ── Tool calls ─────────────────────────────────────────────────────────────

    def record_call(self, call: ToolCall) -> ToolCall:
        """Store the latest version of *call* and publish its state."""
        self.tool_calls[call.id] = call
        self._dirty_calls.add(call.id)
        payload: dict[str, Any] = {
            "session_id": self.session_id,
            "tool_call_id": call.id,
            "name": call.name,
            "state": call.state.value,
        }
        if call.error is not None:
            payload["error"] = call.error
        self.event_bus.publish(SessionEvent.TOOL_CALL_STATE_CHANGED, payload)
        return call

    def pending_calls(self) -> list[ToolCall]:
        return [self.tool_calls[i] for i in sorted(self._dirty_calls) if i in self.tool_calls]

    def mark_calls_synced(self, calls: list[ToolCall]) -> None:
        for call in calls:
            if self.tool_calls.get(call.id) == call:
                self._dirty_calls.discard(call.id)

    def restore_calls(self, calls: list[ToolCall]) -> None:
        self.tool_calls = {c.id: c for c in calls}
        self._dirty_calls.clear()

    # ── Status ─────────────────────────────────────────────────────────────────

    @property
    def dirty(self) -> bool:
        files, results = self.cache.pending_writes(self.session_id)
        return self.log.dirty or bool(self._dirty_calls) or bool(files) or bool(results)
