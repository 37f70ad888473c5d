"""Tests for EventBus."""

from __future__ import annotations

from llmtui.events.bus import EventBus, SessionEvent


class TestEventBus:
    async def test_specific_then_global_handlers(self):
        bus = EventBus()
        seen: list[str] = []
        bus.subscribe_all(lambda e, p: seen.append(f"all:{e}"))
        bus.subscribe(SessionEvent.SESSION_CLOSED, lambda e, p: seen.append("closed"))

        bus.publish(SessionEvent.SESSION_CLOSED, {"session_id": "s"})
        bus.publish(SessionEvent.STATE_REPAIRED, {"session_id": "s"})

        assert seen == ["closed", "all:session.closed", "all:state.repaired"]

    async def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        seen: list[dict] = []

        def broken(event, payload):
            raise RuntimeError("boom")

        bus.subscribe(SessionEvent.PERSISTENCE_SAVED, broken)
        bus.subscribe(SessionEvent.PERSISTENCE_SAVED, lambda e, p: seen.append(p))
        bus.publish(SessionEvent.PERSISTENCE_SAVED, {"session_id": "s", "rows": 2})
        assert seen == [{"session_id": "s", "rows": 2}]

    async def test_async_handlers_drained(self):
        bus = EventBus()
        seen: list[str] = []

        async def handler(event, payload):
            seen.append(payload["session_id"])

        async def broken(event, payload):
            raise RuntimeError("boom")

        bus.subscribe(SessionEvent.SESSION_CREATED, handler)
        bus.subscribe(SessionEvent.SESSION_CREATED, broken)
        bus.publish(SessionEvent.SESSION_CREATED, {"session_id": "s1"})
        await bus.drain()
        assert seen == ["s1"]

    async def test_unsubscribe(self):
        bus = EventBus()
        seen: list[dict] = []

        def handler(event, payload):
            seen.append(payload)

        bus.subscribe(SessionEvent.MESSAGE_APPENDED, handler)
        bus.unsubscribe(SessionEvent.MESSAGE_APPENDED, handler)
        bus.unsubscribe(SessionEvent.MESSAGE_APPENDED, handler)
        bus.publish(SessionEvent.MESSAGE_APPENDED, {"session_id": "s"})
        assert seen == []

    def test_async_handler_without_loop_is_skipped(self):
        bus = EventBus()

        async def handler(event, payload):
            raise AssertionError("should not run")

        bus.subscribe(SessionEvent.SESSION_CLOSED, handler)
        bus.publish(SessionEvent.SESSION_CLOSED, {"session_id": "s"})
