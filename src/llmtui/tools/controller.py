"""Tool call lifecycle: propose, confirm, execute under sandbox and timeout, record."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from llmtui.errors import SandboxViolation, ToolExecutionError
from llmtui.models.config import ToolConfig
from llmtui.models.tool import (
    FileContextEntry,
    ToolCall,
    ToolCallState,
    ToolDecision,
    ToolResultEntry,
)
from llmtui.providers.base import ConfirmationPrompt, ToolCallRequest
from llmtui.tools.capabilities import (
    OutputBuffer,
    ToolCapability,
    ToolOutput,
    default_capabilities,
    tool_definitions,
)
from llmtui.tools.sandbox import resolve_in_sandbox

if TYPE_CHECKING:
    from llmtui.context.state import SessionContext

_INTERRUPTED = "Interrupted: the session closed while the tool was running"
_INTERRUPTED_BEFORE_START = "Interrupted: the session closed before the tool started"


class ToolInvocationController:
    """
    Drives each tool call through its state machine.

    ``proposed → pending_confirmation → approved | denied``, then
    ``approved → executing → completed | failed``.

    Guarantees:
    - Calls are admitted one at a time in arrival order, so at most one call
      per session is ever ``executing``.
    - Every path argument is confined to the sandbox root when the call enters
      ``executing``; a violation fails the call before the capability runs.
    - Execution is a separate task bounded by a wall-clock limit. On expiry the
      task is cancelled (which kills any subprocess) and the call fails with
      the output captured so far as its diagnostic.
    - Every terminal call gets exactly one ``tool`` message in the log, and
      no call is left ``executing`` when :meth:`submit` returns or is cancelled.
    """

    def __init__(
        self,
        ctx: SessionContext,
        confirmation: ConfirmationPrompt,
        config: ToolConfig,
        capabilities: dict[str, ToolCapability] | None = None,
        id_generator: Callable[[str], str] | None = None,
    ) -> None:
        self._ctx = ctx
        self._confirmation = confirmation
        self._config = config
        self._capabilities = capabilities if capabilities is not None else default_capabilities()
        self._id_gen = id_generator or _default_id_generator
        self._sandbox_root = Path(config.sandbox_root).expanduser().resolve()
        self._logger = structlog.get_logger("llmtui.tools").bind(session_id=ctx.session_id)

    @property
    def sandbox_root(self) -> Path:
        return self._sandbox_root

    def definitions(self) -> list[dict[str, Any]]:
        """Function definitions for the provider's ``tools`` parameter."""
        return tool_definitions(self._capabilities)

    # ── Submission ─────────────────────────────────────────────────────────────

    def propose(self, request: ToolCallRequest) -> ToolCall:
        """Register a provider request as a ``proposed`` call without running it."""
        call_id = request.id
        if not call_id or call_id in self._ctx.tool_calls:
            call_id = self._id_gen("call")
        call = ToolCall(
            id=call_id,
            session_id=self._ctx.session_id,
            name=request.name,
            args=dict(request.arguments),
        )
        self._logger.info("tool_call_proposed", tool_call_id=call.id, tool=call.name)
        return self._ctx.record_call(call)

    async def submit(self, request: ToolCallRequest) -> ToolCall:
        """
        Run a provider tool request to a terminal state.

        Returns:
            The terminal ToolCall (``denied``, ``completed`` or ``failed``).
        """
        return await self.process(self.propose(request))

    async def process(self, call: ToolCall) -> ToolCall:
        """Take a ``proposed`` or ``pending_confirmation`` call to a terminal state."""
        async with self._ctx.tool_lock:
            if call.state is ToolCallState.PROPOSED:
                call = self._advance(call, ToolCallState.PENDING_CONFIRMATION)

            decision = await self._confirmation.ask(call)
            if decision is not ToolDecision.APPROVED:
                call = self._advance(call, ToolCallState.DENIED)
                await self._report(call)
                return call

            call = self._advance(call, ToolCallState.APPROVED)
            call = self._advance(call, ToolCallState.EXECUTING)
            return await self._execute(call)

    # ── Execution ──────────────────────────────────────────────────────────────

    async def _execute(self, call: ToolCall) -> ToolCall:
        capability = self._capabilities.get(call.name)
        if capability is None:
            return await self._fail(call, f"Unknown tool: {call.name!r}")

        try:
            self._check_sandbox(capability, call.args)
        except SandboxViolation as exc:
            self._logger.warning("sandbox_violation", tool_call_id=call.id, error=str(exc))
            return await self._fail(call, str(exc))

        limit = capability.time_limit(call.args, self._config.timeout_seconds)
        buffer = OutputBuffer()
        task: asyncio.Task[ToolOutput] = asyncio.create_task(
            capability.execute(call.args, sandbox_root=self._sandbox_root, output=buffer)
        )
        self._ctx.executing_task = task
        try:
            done, _ = await asyncio.wait({task}, timeout=limit)
        except asyncio.CancelledError:
            await _stop(task)
            await self._fail(call, "Cancelled", partial_output=buffer.text)
            raise
        finally:
            self._ctx.executing_task = None

        if not done:
            await _stop(task)
            self._logger.warning("tool_call_timeout", tool_call_id=call.id, timeout=limit)
            return await self._fail(call, f"Timed out after {limit:g}s", partial_output=buffer.text)
        if task.cancelled():
            return await self._fail(call, "Cancelled by user", partial_output=buffer.text)

        exc = task.exception()
        if isinstance(exc, ToolExecutionError):
            return await self._fail(call, str(exc), partial_output=exc.partial_output or buffer.text)
        if isinstance(exc, SandboxViolation):
            return await self._fail(call, str(exc))
        if exc is not None:
            self._logger.error(
                "tool_call_crashed", tool_call_id=call.id, error=str(exc), exc_info=exc
            )
            return await self._fail(
                call, f"{type(exc).__name__}: {exc}", partial_output=buffer.text
            )

        output = task.result()
        call = self._advance(call, ToolCallState.COMPLETED, result=output.text)
        self._cache(call, capability, output)
        await self._report(call)
        return call

    def _check_sandbox(self, capability: ToolCapability, args: dict[str, Any]) -> None:
        for key in capability.path_arguments:
            value = args.get(key)
            if isinstance(value, str) and value:
                resolve_in_sandbox(self._sandbox_root, value)

    def cancel_current(self) -> bool:
        """
        Cancel the executing call, if any.

        Returns:
            True if a running execution was cancelled.
        """
        task = self._ctx.executing_task
        if task is None or task.done():
            return False
        task.cancel()
        self._logger.info("tool_call_cancel_requested")
        return True

    # ── Recovery ───────────────────────────────────────────────────────────────

    async def recover_interrupted(self) -> list[ToolCall]:
        """
        Fail calls that were mid-flight when the session was last saved.

        ``executing`` calls fail directly; ``approved`` calls pass through
        ``executing`` first. Each gets its tool message. ``proposed`` and
        ``pending_confirmation`` calls are left for :meth:`resume_pending`.
        """
        recovered: list[ToolCall] = []
        for call in list(self._ctx.tool_calls.values()):
            if call.state is ToolCallState.APPROVED:
                call = self._advance(call, ToolCallState.EXECUTING)
                recovered.append(await self._fail(call, _INTERRUPTED_BEFORE_START))
            elif call.state is ToolCallState.EXECUTING:
                recovered.append(await self._fail(call, _INTERRUPTED))
        if recovered:
            self._logger.warning("tool_calls_recovered", count=len(recovered))
        return recovered

    def awaiting_confirmation(self) -> list[ToolCall]:
        """Calls restored in ``proposed`` or ``pending_confirmation``, oldest first."""
        waiting = (ToolCallState.PROPOSED, ToolCallState.PENDING_CONFIRMATION)
        return sorted(
            (c for c in self._ctx.tool_calls.values() if c.state in waiting),
            key=lambda c: (c.created_at, c.id),
        )

    async def resume_pending(self) -> list[ToolCall]:
        """Put every call still awaiting confirmation back through :meth:`process`."""
        return [await self.process(call) for call in self.awaiting_confirmation()]

    # ── Internals ──────────────────────────────────────────────────────────────

    def _advance(self, call: ToolCall, to: ToolCallState, **payload: Any) -> ToolCall:
        updated = call.transition(to, **payload)
        self._logger.debug(
            "tool_call_transition", tool_call_id=call.id, source=call.state.value, target=to.value
        )
        return self._ctx.record_call(updated)

    async def _fail(self, call: ToolCall, error: str, *, partial_output: str = "") -> ToolCall:
        call = self._advance(
            call, ToolCallState.FAILED, error=error, partial_output=partial_output or None
        )
        self._logger.info("tool_call_failed", tool_call_id=call.id, tool=call.name, error=error)
        await self._report(call)
        return call

    def _cache(self, call: ToolCall, capability: ToolCapability, output: ToolOutput) -> None:
        sid = self._ctx.session_id
        if capability.read_like and output.snapshot_path is not None:
            entry = FileContextEntry(
                session_id=sid,
                path=output.snapshot_path,
                content=output.snapshot_content or "",
            )
            self._ctx.cache.put(sid, entry.path, entry)
        else:
            self._ctx.cache.put(
                sid, call.id, ToolResultEntry(session_id=sid, call_id=call.id, output=output.text)
            )

    async def _report(self, call: ToolCall) -> None:
        await self._ctx.append_message("tool", render_outcome(call), tool_call_id=call.id)


def render_outcome(call: ToolCall) -> str:
    """The tool message text reported back to the provider for a terminal call."""
    if call.state is ToolCallState.COMPLETED:
        return call.result or ""
    if call.state is ToolCallState.DENIED:
        return f"User declined to run tool '{call.name}'."
    text = f"Error: {call.error}"
    if call.partial_output:
        text += f"\n\nPartial output:\n{call.partial_output}"
    return text


async def _stop(task: asyncio.Task[Any]) -> None:
    """Cancel *task* and wait until it has actually finished."""
    if not task.done():
        task.cancel()
    await asyncio.wait({task})


def _default_id_generator(prefix: str) -> str:
    from llmtui.session import make_id

    return make_id(prefix)
