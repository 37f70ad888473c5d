"""Interfaces to the external collaborators: completion provider and confirmation prompt."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from llmtui.models.tool import ToolCall, ToolDecision


@dataclass
class ProviderMessage:
    """A single message formatted for the provider API."""

    role: str
    content: str
    tool_call_id: str | None = None


@dataclass
class TextChunk:
    """An incremental piece of assistant text from a streaming response."""

    text: str


@dataclass
class ToolCallRequest:
    """A tool invocation requested by the provider mid-stream."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


StreamEvent = TextChunk | ToolCallRequest


class CompletionProvider(Protocol):
    """
    A streaming chat-completion backend.

    ``send`` yields :class:`TextChunk` and :class:`ToolCallRequest` events in
    arrival order and ends when the response is complete. Failures surface as
    :class:`~llmtui.errors.ProviderError`.
    """

    def send(
        self,
        context: list[ProviderMessage],
        *,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


class ConfirmationPrompt(Protocol):
    """Asks the user whether a pending tool call may run."""

    async def ask(self, call: ToolCall) -> ToolDecision: ...


async def complete_text(
    provider: CompletionProvider, context: list[ProviderMessage]
) -> str:
    """Drain a provider stream into plain text, ignoring tool requests."""
    parts: list[str] = []
    async for event in provider.send(context):
        if isinstance(event, TextChunk):
            parts.append(event.text)
    return "".join(parts)
