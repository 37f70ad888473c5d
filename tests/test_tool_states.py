"""Tests for the ToolCall state machine."""

from __future__ import annotations

import itertools

import pytest
from pydantic import ValidationError

from llmtui.errors import InvalidTransitionError
from llmtui.models.tool import ToolCall, ToolCallState, allowed_transitions

S = ToolCallState


def _call(**kwargs) -> ToolCall:
    return ToolCall(id="call_1", session_id="sess_TEST01", name="bash", **kwargs)


class TestTransitionTable:
    async def test_exactly_six_edges(self):
        """Only the six documented edges are allowed."""
        edges = {
            (a, b) for a, b in itertools.product(S, S) if b in allowed_transitions(a)
        }
        assert edges == {
            (S.PROPOSED, S.PENDING_CONFIRMATION),
            (S.PENDING_CONFIRMATION, S.APPROVED),
            (S.PENDING_CONFIRMATION, S.DENIED),
            (S.APPROVED, S.EXECUTING),
            (S.EXECUTING, S.COMPLETED),
            (S.EXECUTING, S.FAILED),
        }

    async def test_every_other_edge_rejected(self):
        """transition() raises for every pair outside the table."""
        for source, target in itertools.product(S, S):
            if target in allowed_transitions(source):
                continue
            call = _build_in(source)
            with pytest.raises(InvalidTransitionError):
                call.transition(target)

    async def test_terminal_states(self):
        """Denied, completed and failed are terminal; nothing leaves them."""
        assert {s for s in S if s.terminal} == {S.DENIED, S.COMPLETED, S.FAILED}
        for state in (S.DENIED, S.COMPLETED, S.FAILED):
            assert allowed_transitions(state) == frozenset()

    async def test_happy_path(self):
        """A call walks proposed → completed, gaining resolved_at at the end."""
        call = _call()
        call = call.transition(S.PENDING_CONFIRMATION)
        call = call.transition(S.APPROVED)
        call = call.transition(S.EXECUTING)
        assert call.resolved_at is None
        call = call.transition(S.COMPLETED, result="ok")
        assert call.state is S.COMPLETED
        assert call.result == "ok"
        assert call.resolved_at is not None

    async def test_transition_returns_new_object(self):
        """The original call is left untouched."""
        call = _call()
        moved = call.transition(S.PENDING_CONFIRMATION)
        assert call.state is S.PROPOSED
        assert moved.state is S.PENDING_CONFIRMATION

    async def test_invalid_transition_error_details(self):
        """The error names the call and both states."""
        with pytest.raises(InvalidTransitionError) as info:
            _call().transition(S.EXECUTING)
        assert info.value.call_id == "call_1"
        assert info.value.current == "proposed"
        assert info.value.target == "executing"


class TestStateConsistentConstruction:
    async def test_completed_requires_result(self):
        """A completed call without a result cannot be built."""
        with pytest.raises(ValidationError):
            _call(state=S.COMPLETED, resolved_at=1)

    async def test_result_only_on_completed(self):
        """A result on a non-completed call is rejected."""
        with pytest.raises(ValidationError):
            _call(state=S.EXECUTING, result="early")

    async def test_failed_requires_error(self):
        """A failed call must carry an error."""
        with pytest.raises(ValidationError):
            _call(state=S.FAILED, resolved_at=1)

    async def test_partial_output_only_on_failed(self):
        """partial_output belongs to failed calls."""
        with pytest.raises(ValidationError):
            _call(state=S.COMPLETED, result="ok", partial_output="x", resolved_at=1)

    async def test_resolved_at_only_when_terminal(self):
        """resolved_at marks terminal calls only."""
        with pytest.raises(ValidationError):
            _call(state=S.EXECUTING, resolved_at=1)

    async def test_failed_with_partial_output(self):
        """A failed call keeps its diagnostic output."""
        call = _build_in(S.EXECUTING).transition(
            S.FAILED, error="Timed out", partial_output="start\n"
        )
        assert call.error == "Timed out"
        assert call.partial_output == "start\n"
        assert call.result is None


def _build_in(state: ToolCallState) -> ToolCall:
    """Walk a fresh call along valid edges until it reaches *state*."""
    path = {
        S.PROPOSED: [],
        S.PENDING_CONFIRMATION: [S.PENDING_CONFIRMATION],
        S.APPROVED: [S.PENDING_CONFIRMATION, S.APPROVED],
        S.DENIED: [S.PENDING_CONFIRMATION, S.DENIED],
        S.EXECUTING: [S.PENDING_CONFIRMATION, S.APPROVED, S.EXECUTING],
        S.COMPLETED: [S.PENDING_CONFIRMATION, S.APPROVED, S.EXECUTING, S.COMPLETED],
        S.FAILED: [S.PENDING_CONFIRMATION, S.APPROVED, S.EXECUTING, S.FAILED],
    }[state]
    call = _call()
    for step in path:
        if step is S.COMPLETED:
            call = call.transition(step, result="ok")
        elif step is S.FAILED:
            call = call.transition(step, error="boom")
        else:
            call = call.transition(step)
    return call
