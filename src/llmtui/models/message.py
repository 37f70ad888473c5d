"""Conversation log records: messages, summaries, and per-turn results."""

from __future__ import annotations

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["user", "assistant", "system", "tool"]


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


# ── Log Records ────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single finalized entry in a session's conversation log.

    Messages are frozen. The only permitted change after creation is the
    ``compacted`` flip, which :class:`~llmtui.store.log.MessageStore` performs
    by replacing the record with ``model_copy(update={"compacted": True})``.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    ordinal: int = Field(ge=1)
    role: Role
    content: str
    token_count: int = Field(ge=0)
    compacted: bool = False
    created_at: int = Field(default_factory=now_ms)
    tool_call_id: str | None = None
    """Set on ``tool`` messages: the ToolCall whose outcome this message reports."""

    @model_validator(mode="after")
    def validate_tool_reference(self) -> Message:
        if self.role == "tool" and self.tool_call_id is None:
            raise ValueError("tool messages must reference a tool_call_id")
        return self


class Summary(BaseModel):
    """
    A compaction summary replacing the contiguous ordinal range
    ``range_start..range_end`` (inclusive) of one session's messages.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    range_start: int = Field(ge=1)
    range_end: int = Field(ge=1)
    text: str
    token_count: int = Field(ge=0)
    created_at: int = Field(default_factory=now_ms)

    @model_validator(mode="after")
    def validate_range(self) -> Summary:
        if self.range_end < self.range_start:
            raise ValueError(
                f"range_end ({self.range_end}) precedes range_start ({self.range_start})"
            )
        return self

    @property
    def covered(self) -> int:
        """Number of ordinals the summary spans."""
        return self.range_end - self.range_start + 1


# ── Result Types ───────────────────────────────────────────────────────────────


class CompactionResult(BaseModel):
    """
    The result of a compaction run.

    ``summary`` is None when there was nothing eligible to compact.
    """

    session_id: str
    summary: Summary | None = None
    compacted_message_count: int = 0
    tokens_before: int
    tokens_after: int
    elapsed_ms: float

    @property
    def performed(self) -> bool:
        return self.summary is not None


class TurnResult(BaseModel):
    """
    The result of a single ``ChatSession.send()`` call.

    Carries the assistant's final text, the ordinals appended during the turn,
    and whether the turn was cut short by :meth:`ChatSession.cancel`.
    """

    text: str
    assistant_ordinals: list[int] = Field(default_factory=list)
    tool_call_ids: list[str] = Field(default_factory=list)
    tool_rounds: int = 0
    cancelled: bool = False
    compaction_triggered: bool = False
    total_tokens: int = 0
