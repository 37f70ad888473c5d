"""Tests for ToolInvocationController: confirmation, sandbox, timeout, cancellation."""

from __future__ import annotations

import asyncio

import pytest

from llmtui.models.config import ToolConfig
from llmtui.models.tool import (
    FileContextEntry,
    ToolCall,
    ToolCallState,
    ToolDecision,
    ToolResultEntry,
)
from llmtui.providers.base import ToolCallRequest
from llmtui.tools.capabilities import default_capabilities
from llmtui.tools.controller import ToolInvocationController, render_outcome
from tests.conftest import RecordingCapability, ScriptedConfirmation


def _controller(ctx, sandbox, *, decision=ToolDecision.APPROVED, capabilities=None, timeout=5.0):
    confirmation = ScriptedConfirmation(decision)
    controller = ToolInvocationController(
        ctx,
        confirmation,
        ToolConfig(sandbox_root=str(sandbox), timeout_seconds=timeout),
        capabilities if capabilities is not None else default_capabilities(),
        id_generator=lambda prefix: f"{prefix}_generated",
    )
    return controller, confirmation


def _tool_messages(ctx, call_id: str):
    return [m for m in ctx.log.messages() if m.role == "tool" and m.tool_call_id == call_id]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestConfirmation:
    async def test_read_completes_and_caches_snapshot(self, ctx, sandbox):
        """An approved read completes, caches a file snapshot, and logs one tool message."""
        (sandbox / "notes.md").write_text("alpha\nbeta\n")
        controller, confirmation = _controller(ctx, sandbox)

        call = await controller.submit(
            ToolCallRequest(id="call_1", name="read", arguments={"file_path": "notes.md"})
        )

        assert call.state is ToolCallState.COMPLETED
        assert confirmation.asked[0].state is ToolCallState.PENDING_CONFIRMATION
        entry = ctx.cache.get(ctx.session_id, "notes.md")
        assert isinstance(entry, FileContextEntry)
        assert entry.content == "alpha\nbeta\n"
        messages = _tool_messages(ctx, "call_1")
        assert len(messages) == 1
        assert messages[0].content == "     1→alpha\n     2→beta\n"
        ctx.accountant.verify()

    async def test_denied_never_executes(self, ctx, sandbox):
        probe = RecordingCapability()
        controller, _ = _controller(
            ctx, sandbox, decision=ToolDecision.DENIED, capabilities={"probe": probe}
        )

        call = await controller.submit(
            ToolCallRequest(id="call_2", name="probe", arguments={"file_path": "a.txt"})
        )

        assert call.state is ToolCallState.DENIED
        assert probe.executed == []
        assert _tool_messages(ctx, "call_2")[0].content == "User declined to run tool 'probe'."

    async def test_generic_result_cached_by_call_id(self, ctx, sandbox):
        controller, _ = _controller(ctx, sandbox)
        call = await controller.submit(
            ToolCallRequest(
                id="call_w", name="write", arguments={"file_path": "out/a.txt", "content": "hi"}
            )
        )
        assert call.state is ToolCallState.COMPLETED
        assert (sandbox / "out" / "a.txt").read_text() == "hi"
        entry = ctx.cache.get(ctx.session_id, "call_w")
        assert isinstance(entry, ToolResultEntry)
        assert entry.output == "File created successfully at: out/a.txt"

    async def test_duplicate_request_id_gets_fresh_id(self, ctx, sandbox):
        controller, _ = _controller(ctx, sandbox, decision=ToolDecision.DENIED)
        first = await controller.submit(ToolCallRequest(id="dup", name="bash", arguments={}))
        second = await controller.submit(ToolCallRequest(id="dup", name="bash", arguments={}))
        assert first.id == "dup"
        assert second.id == "call_generated"

    async def test_state_change_events(self, ctx, sandbox, event_bus):
        from llmtui.events.bus import SessionEvent
        from tests.conftest import events_of

        controller, _ = _controller(ctx, sandbox, decision=ToolDecision.DENIED)
        await controller.submit(ToolCallRequest(id="call_e", name="bash", arguments={}))
        states = [p["state"] for p in events_of(event_bus, SessionEvent.TOOL_CALL_STATE_CHANGED)]
        assert states == ["proposed", "pending_confirmation", "denied"]


class TestSandbox:
    async def test_escaping_path_rejected_before_execution(self, ctx, sandbox):
        """A ../ path fails the call without the capability ever running."""
        probe = RecordingCapability()
        controller, _ = _controller(ctx, sandbox, capabilities={"probe": probe})

        call = await controller.submit(
            ToolCallRequest(id="call_3", name="probe", arguments={"file_path": "../secret.txt"})
        )

        assert call.state is ToolCallState.FAILED
        assert "outside the sandbox" in call.error
        assert probe.executed == []
        assert _tool_messages(ctx, "call_3")[0].content.startswith("Error: Path")

    async def test_absolute_path_outside_rejected(self, ctx, sandbox, tmp_path):
        probe = RecordingCapability()
        controller, _ = _controller(ctx, sandbox, capabilities={"probe": probe})
        call = await controller.submit(
            ToolCallRequest(
                id="call_4", name="probe", arguments={"file_path": str(tmp_path / "x.txt")}
            )
        )
        assert call.state is ToolCallState.FAILED
        assert probe.executed == []

    async def test_inside_path_allowed(self, ctx, sandbox):
        probe = RecordingCapability()
        controller, _ = _controller(ctx, sandbox, capabilities={"probe": probe})
        call = await controller.submit(
            ToolCallRequest(id="call_5", name="probe", arguments={"file_path": "sub/../a.txt"})
        )
        assert call.state is ToolCallState.COMPLETED
        assert len(probe.executed) == 1

    async def test_unknown_tool_fails(self, ctx, sandbox):
        controller, _ = _controller(ctx, sandbox)
        call = await controller.submit(ToolCallRequest(id="call_6", name="nope", arguments={}))
        assert call.state is ToolCallState.FAILED
        assert "Unknown tool" in call.error


class TestExecution:
    async def test_bash_timeout(self, ctx, sandbox):
        """A command outliving its limit fails with a timeout and one tool message."""
        controller, _ = _controller(ctx, sandbox, timeout=0.5)

        call = await controller.submit(
            ToolCallRequest(id="call_t", name="bash", arguments={"command": "echo start; sleep 5"})
        )

        assert call.state is ToolCallState.FAILED
        assert call.error.startswith("Timed out after 0.5s")
        assert "start" in (call.partial_output or "")
        assert len(_tool_messages(ctx, "call_t")) == 1
        assert ctx.executing_task is None

    async def test_bash_nonzero_exit(self, ctx, sandbox):
        controller, _ = _controller(ctx, sandbox)
        call = await controller.submit(
            ToolCallRequest(id="call_x", name="bash", arguments={"command": "echo oops; exit 3"})
        )
        assert call.state is ToolCallState.FAILED
        assert call.error == "Command exited with code 3"
        assert call.partial_output == "oops\n"
        content = _tool_messages(ctx, "call_x")[0].content
        assert content == "Error: Command exited with code 3\n\nPartial output:\noops\n"

    async def test_bash_success_runs_in_sandbox(self, ctx, sandbox):
        controller, _ = _controller(ctx, sandbox)
        call = await controller.submit(
            ToolCallRequest(id="call_p", name="bash", arguments={"command": "pwd"})
        )
        assert call.state is ToolCallState.COMPLETED
        assert call.result.strip() == str(sandbox.resolve())

    async def test_one_call_at_a_time_in_order(self, ctx, sandbox):
        """Concurrent submissions are confirmed in arrival order and never overlap."""
        probe = RecordingCapability(hold=0.05)
        controller, confirmation = _controller(ctx, sandbox, capabilities={"probe": probe})

        calls = await asyncio.gather(
            *(
                controller.submit(
                    ToolCallRequest(id=f"call_{i}", name="probe", arguments={"file_path": "a"})
                )
                for i in range(3)
            )
        )

        assert [c.state for c in calls] == [ToolCallState.COMPLETED] * 3
        assert [c.id for c in confirmation.asked] == ["call_0", "call_1", "call_2"]
        assert probe.max_running == 1

    async def test_cancel_current(self, ctx, sandbox):
        """Cancelling the running call fails it with the output captured so far."""
        probe = RecordingCapability(hold=-1)
        controller, _ = _controller(ctx, sandbox, capabilities={"probe": probe})
        task = asyncio.create_task(
            controller.submit(
                ToolCallRequest(id="call_c", name="probe", arguments={"file_path": "a"})
            )
        )
        await _wait_until(lambda: ctx.executing_task is not None)

        assert controller.cancel_current()
        call = await task

        assert call.state is ToolCallState.FAILED
        assert call.error == "Cancelled by user"
        assert call.partial_output == "working"
        assert len(_tool_messages(ctx, "call_c")) == 1
        assert not controller.cancel_current()

    async def test_outer_cancellation_leaves_no_executing_call(self, ctx, sandbox):
        probe = RecordingCapability(hold=-1)
        controller, _ = _controller(ctx, sandbox, capabilities={"probe": probe})
        task = asyncio.create_task(
            controller.submit(
                ToolCallRequest(id="call_o", name="probe", arguments={"file_path": "a"})
            )
        )
        await _wait_until(lambda: ctx.executing_task is not None)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert ctx.tool_calls["call_o"].state is ToolCallState.FAILED
        assert len(_tool_messages(ctx, "call_o")) == 1


class TestRecovery:
    async def test_interrupted_calls_fail_on_recovery(self, ctx, sandbox):
        executing = ToolCall(
            id="call_r1", session_id=ctx.session_id, name="bash", state=ToolCallState.EXECUTING
        )
        approved = ToolCall(
            id="call_r2", session_id=ctx.session_id, name="bash", state=ToolCallState.APPROVED
        )
        ctx.restore_calls([executing, approved])
        controller, _ = _controller(ctx, sandbox)

        recovered = await controller.recover_interrupted()

        assert {c.id for c in recovered} == {"call_r1", "call_r2"}
        assert all(c.state is ToolCallState.FAILED for c in recovered)
        assert all(c.error.startswith("Interrupted") for c in recovered)
        assert len(_tool_messages(ctx, "call_r1")) == 1
        assert len(_tool_messages(ctx, "call_r2")) == 1

    async def test_resume_pending_asks_again(self, ctx, sandbox):
        pending = ToolCall(
            id="call_q",
            session_id=ctx.session_id,
            name="bash",
            args={"command": "true"},
            state=ToolCallState.PENDING_CONFIRMATION,
        )
        ctx.restore_calls([pending])
        controller, confirmation = _controller(ctx, sandbox, decision=ToolDecision.DENIED)

        assert [c.id for c in controller.awaiting_confirmation()] == ["call_q"]
        resumed = await controller.resume_pending()

        assert resumed[0].state is ToolCallState.DENIED
        assert confirmation.asked[0].id == "call_q"
        assert controller.awaiting_confirmation() == []


class TestRenderOutcome:
    async def test_failed_without_partial(self):
        call = ToolCall(
            id="c",
            session_id="s",
            name="bash",
            state=ToolCallState.FAILED,
            error="boom",
            resolved_at=1,
        )
        assert render_outcome(call) == "Error: boom"
