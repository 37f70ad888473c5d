"""Completion provider and confirmation prompt interfaces."""

from llmtui.providers.base import (
    CompletionProvider,
    ConfirmationPrompt,
    ProviderMessage,
    StreamEvent,
    TextChunk,
    ToolCallRequest,
    complete_text,
)
from llmtui.providers.litellm_provider import LiteLLMProvider

__all__ = [
    "CompletionProvider",
    "ConfirmationPrompt",
    "LiteLLMProvider",
    "ProviderMessage",
    "StreamEvent",
    "TextChunk",
    "ToolCallRequest",
    "complete_text",
]
