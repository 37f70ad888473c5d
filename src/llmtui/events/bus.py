"""In-process pub/sub event bus for session lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["SessionEvent", dict[str, Any]], None | Awaitable[None]]


class SessionEvent(StrEnum):
    """All event types published by llmtui components.

    Typed payload definitions for each event live in
    :mod:`llmtui.events.payloads`.
    """

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_LOADED = "session.loaded"
    SESSION_UPDATED = "session.updated"
    SESSION_CLOSED = "session.closed"

    # Message log
    MESSAGE_APPENDED = "message.appended"

    # Compaction lifecycle
    COMPACTION_TRIGGERED = "compaction.triggered"
    COMPACTION_COMPLETED = "compaction.completed"
    COMPACTION_FAILED = "compaction.failed"

    # Tool calls
    TOOL_CALL_STATE_CHANGED = "tool_call.state_changed"

    # Persistence
    PERSISTENCE_SAVED = "persistence.saved"
    PERSISTENCE_FAILED = "persistence.failed"
    STATE_REPAIRED = "state.repaired"


class EventBus:
    """
    Per-session publish/subscribe for :class:`SessionEvent`.

    ``publish()`` never raises: a failing handler is logged and the remaining
    handlers still run. Coroutine handlers run as tasks on the current loop;
    :meth:`drain` waits for them, which ``ChatSession.close()`` does before
    releasing the store.

    Example::

        bus = EventBus()
        bus.subscribe(
            SessionEvent.TOOL_CALL_STATE_CHANGED,
            lambda event, payload: print(payload["tool_call_id"], payload["state"]),
        )
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        # ``None`` holds handlers subscribed to every event.
        self._handlers: dict[SessionEvent | None, list[Handler]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("llmtui.events")

    def subscribe(self, event: SessionEvent, handler: Handler) -> None:
        """Call ``handler(event, payload)`` whenever *event* is published."""
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        self._handlers.setdefault(None, []).append(handler)

    def unsubscribe(self, event: SessionEvent, handler: Handler) -> None:
        """No-op if *handler* is not subscribed to *event*."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: SessionEvent, payload: dict[str, Any]) -> None:
        targets = [*self._handlers.get(event, ()), *self._handlers.get(None, ())]
        for handler in targets:
            try:
                outcome = handler(event, payload)
            except Exception as exc:
                self._handler_failed(event, handler, exc)
                continue
            if asyncio.iscoroutine(outcome):
                self._spawn(event, handler, outcome)

    async def drain(self) -> None:
        """Wait for every coroutine handler started so far."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    def _spawn(self, event: SessionEvent, handler: Handler, coro: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            self._logger.warning("event_handler_skipped_no_loop", event=str(event))
            return
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                self._handler_failed(event, handler, finished.exception())

        task.add_done_callback(_done)

    def _handler_failed(self, event: SessionEvent, handler: Handler, exc: BaseException | None) -> None:
        self._logger.error(
            "event_handler_error",
            event=str(event),
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )
