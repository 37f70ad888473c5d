"""Shared fixtures for llmtui tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from llmtui.context.state import SessionContext
from llmtui.events.bus import EventBus, SessionEvent
from llmtui.models.config import (
    AutosaveConfig,
    AutosaveMode,
    LlmTuiConfig,
    StoreConfig,
    ToolConfig,
)
from llmtui.models.message import Message
from llmtui.models.tool import ToolCall, ToolDecision
from llmtui.providers.base import ProviderMessage, StreamEvent, TextChunk
from llmtui.store.pool import StorePool
from llmtui.store.sqlite import SqliteStore
from llmtui.tools.capabilities import OutputBuffer, ToolOutput


@pytest.fixture
def sandbox(tmp_path):
    """Empty sandbox root directory for tool calls."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path, sandbox):
    """LlmTuiConfig with a temp database and sandbox, saving on every send."""
    return LlmTuiConfig(
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        tools=ToolConfig(sandbox_root=str(sandbox), timeout_seconds=5),
        autosave=AutosaveConfig(mode=AutosaveMode.ONSEND),
    )


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def store(config, pool):
    """Initialized SqliteStore backed by a temp database (pool-managed)."""
    s = SqliteStore(config.store, pool=pool)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[SessionEvent, dict[str, Any]]] = []

    def _collect(event: SessionEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest.fixture
def ctx(event_bus):
    """SessionContext for ``sess_TEST01`` using the heuristic estimator."""
    c = SessionContext("sess_TEST01", event_bus=event_bus)
    c.accountant._force_heuristic = True
    return c


def events_of(bus: EventBus, kind: SessionEvent) -> list[dict[str, Any]]:
    """Payloads collected by the ``event_bus`` fixture for one event type."""
    return [payload for event, payload in bus.collected if event == kind]  # type: ignore[attr-defined]


async def fill_log(ctx: SessionContext, count: int, *, size: int = 40) -> list[Message]:
    """Append *count* alternating user/assistant messages of roughly equal size."""
    roles = ["user", "assistant"]
    messages = []
    for i in range(count):
        content = f"message {i + 1:02d} " + "x" * size
        messages.append(await ctx.append_message(roles[i % 2], content))
    return messages


class ScriptedProvider:
    """
    CompletionProvider fake that replays one scripted response per ``send()``.

    A response is a string (streamed as one chunk), a list of stream events,
    or an exception raised when the stream starts. Once the script runs out
    every call answers with ``default``.
    """

    def __init__(self, *responses: str | list[StreamEvent] | Exception, default: str = "ok") -> None:
        self.responses = list(responses)
        self.default = default
        self.calls: list[list[ProviderMessage]] = []
        self.tools_seen: list[list[dict[str, Any]] | None] = []

    async def send(self, context, *, tools=None):
        self.calls.append(list(context))
        self.tools_seen.append(tools)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            response = [TextChunk(text=response)]
        for event in response:
            yield event


class ScriptedConfirmation:
    """ConfirmationPrompt fake: answers with ``decision`` and records what it was asked."""

    def __init__(self, decision: ToolDecision = ToolDecision.APPROVED, delay: float = 0.0) -> None:
        self.decision = decision
        self.delay = delay
        self.asked: list[ToolCall] = []

    async def ask(self, call: ToolCall) -> ToolDecision:
        self.asked.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.decision


class RecordingCapability:
    """Tool capability fake that records executions and optionally blocks."""

    def __init__(
        self,
        name: str = "probe",
        *,
        path_arguments: tuple[str, ...] = ("file_path",),
        read_like: bool = False,
        output: str = "done",
        hold: float = 0.0,
    ) -> None:
        self.name = name
        self.path_arguments = path_arguments
        self.read_like = read_like
        self.output = output
        self.hold = hold
        self.executed: list[dict[str, Any]] = []
        self.running = 0
        self.max_running = 0
        self.release = asyncio.Event()

    @property
    def definition(self) -> dict[str, Any]:
        return {"type": "function", "function": {"name": self.name, "parameters": {}}}

    def time_limit(self, args: dict[str, Any], default: float) -> float:
        return default

    async def execute(self, args, *, sandbox_root, output: OutputBuffer) -> ToolOutput:
        self.executed.append(args)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            output.write("working")
            if self.hold > 0:
                await asyncio.sleep(self.hold)
            elif self.hold < 0:
                await self.release.wait()
            return ToolOutput(text=self.output)
        finally:
            self.running -= 1
