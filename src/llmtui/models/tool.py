"""Tool call lifecycle and tool-result cache records."""

from __future__ import annotations

import hashlib
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from llmtui.errors import InvalidTransitionError
from llmtui.models.message import now_ms


class ToolCallState(StrEnum):
    """Lifecycle states of a provider-issued tool call."""

    PROPOSED = "proposed"
    PENDING_CONFIRMATION = "pending_confirmation"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL: frozenset[ToolCallState] = frozenset(
    {ToolCallState.DENIED, ToolCallState.COMPLETED, ToolCallState.FAILED}
)

_TRANSITIONS: dict[ToolCallState, frozenset[ToolCallState]] = {
    ToolCallState.PROPOSED: frozenset({ToolCallState.PENDING_CONFIRMATION}),
    ToolCallState.PENDING_CONFIRMATION: frozenset({ToolCallState.APPROVED, ToolCallState.DENIED}),
    ToolCallState.APPROVED: frozenset({ToolCallState.EXECUTING}),
    ToolCallState.EXECUTING: frozenset({ToolCallState.COMPLETED, ToolCallState.FAILED}),
    ToolCallState.DENIED: frozenset(),
    ToolCallState.COMPLETED: frozenset(),
    ToolCallState.FAILED: frozenset(),
}


def allowed_transitions(state: ToolCallState) -> frozenset[ToolCallState]:
    """Return the states reachable from *state* in one step."""
    return _TRANSITIONS[state]


class ToolDecision(StrEnum):
    """The user's answer to a confirmation prompt."""

    APPROVED = "approved"
    DENIED = "denied"


class ToolCall(BaseModel):
    """
    One tool invocation requested by the provider.

    Instances are frozen; :meth:`transition` returns the next state as a new
    object. Construction rejects payloads that do not match the state:
    ``result`` exists only on ``completed`` calls, ``error`` and
    ``partial_output`` only on ``failed`` calls, and ``resolved_at`` only on
    terminal calls.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    state: ToolCallState = ToolCallState.PROPOSED
    result: str | None = None
    error: str | None = None
    partial_output: str | None = None
    created_at: int = Field(default_factory=now_ms)
    resolved_at: int | None = None

    @model_validator(mode="after")
    def validate_state_payload(self) -> ToolCall:
        completed = self.state is ToolCallState.COMPLETED
        failed = self.state is ToolCallState.FAILED
        if completed != (self.result is not None):
            raise ValueError("result is required for, and only allowed on, completed calls")
        if failed != (self.error is not None):
            raise ValueError("error is required for, and only allowed on, failed calls")
        if self.partial_output is not None and not failed:
            raise ValueError("partial_output is only allowed on failed calls")
        if self.state.terminal != (self.resolved_at is not None):
            raise ValueError("resolved_at is set exactly when the call is terminal")
        return self

    def transition(
        self,
        to: ToolCallState,
        *,
        result: str | None = None,
        error: str | None = None,
        partial_output: str | None = None,
    ) -> ToolCall:
        """
        Return this call moved to state *to*.

        Args:
            to: Target state. Must be one of ``allowed_transitions(self.state)``.
            result: Output for a ``completed`` call.
            error: Error text for a ``failed`` call.
            partial_output: Output captured before a ``failed`` call stopped.

        Raises:
            InvalidTransitionError: If the edge is not in the transition table.
        """
        if to not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.id, self.state.value, to.value)
        data = self.model_dump()
        data.update(
            state=to,
            result=result,
            error=error,
            partial_output=partial_output or None,
            resolved_at=now_ms() if to.terminal else None,
        )
        return ToolCall.model_validate(data)

    @property
    def terminal(self) -> bool:
        return self.state.terminal


# ── Cache Records ──────────────────────────────────────────────────────────────


class FileContextEntry(BaseModel):
    """Snapshot of a file read through the ``read`` capability."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    path: str
    """Sandbox-relative POSIX path; the cache key."""
    content: str
    checksum: str = ""
    read_at: int = Field(default_factory=now_ms)

    @model_validator(mode="before")
    @classmethod
    def fill_checksum(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("checksum"):
            content = data.get("content", "")
            data = {**data, "checksum": hashlib.sha256(str(content).encode()).hexdigest()}
        return data


class ToolResultEntry(BaseModel):
    """Output of a completed non-read tool call, keyed by call id."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    call_id: str
    output: str
    created_at: int = Field(default_factory=now_ms)
