"""Completion provider backed by litellm's streaming ``acompletion``."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog

from llmtui.errors import ProviderError
from llmtui.providers.base import ProviderMessage, StreamEvent, TextChunk, ToolCallRequest


class LiteLLMProvider:
    """
    Stream chat completions from any model litellm supports.

    Text deltas are yielded as they arrive. Tool-call deltas are accumulated by
    index and yielded as complete :class:`ToolCallRequest` objects once the
    stream ends.

    Tool-result messages are sent as ``user`` messages with a bracketed
    header, since the conversation log stores tool requests as assistant text
    rather than structured ``tool_calls``.

    Example::

        provider = LiteLLMProvider("anthropic/claude-3-5-sonnet-20241022")
        async for event in provider.send([ProviderMessage("user", "Hi")]):
            ...
    """

    def __init__(self, model: str, *, max_tokens: int | None = None, **kwargs: Any) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._extra = kwargs
        self._logger = structlog.get_logger("llmtui.providers.litellm").bind(model=model)

    @property
    def model(self) -> str:
        return self._model

    @staticmethod
    def to_wire(context: list[ProviderMessage]) -> list[dict[str, Any]]:
        """Convert assembled messages into litellm's message format."""
        wire: list[dict[str, Any]] = []
        for message in context:
            if message.role == "tool":
                wire.append(
                    {
                        "role": "user",
                        "content": f"[TOOL RESULT {message.tool_call_id}]\n{message.content}",
                    }
                )
            else:
                wire.append({"role": message.role, "content": message.content})
        return wire

    async def send(
        self,
        context: list[ProviderMessage],
        *,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        import litellm

        call_kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": self.to_wire(context),
            "stream": True,
            **self._extra,
        }
        if self._max_tokens is not None:
            call_kwargs["max_tokens"] = self._max_tokens
        if tools:
            call_kwargs["tools"] = tools

        pending: dict[int, dict[str, str]] = {}
        try:
            stream = await litellm.acompletion(**call_kwargs)
            async for chunk in stream:
                delta = chunk.choices[0].delta if chunk.choices else None
                if delta is None:
                    continue
                if delta.content:
                    yield TextChunk(text=delta.content)
                for tool_delta in getattr(delta, "tool_calls", None) or []:
                    slot = pending.setdefault(
                        tool_delta.index or 0, {"id": "", "name": "", "arguments": ""}
                    )
                    if tool_delta.id:
                        slot["id"] = tool_delta.id
                    function = tool_delta.function
                    if function is not None:
                        if function.name:
                            slot["name"] += function.name
                        if function.arguments:
                            slot["arguments"] += function.arguments
        except ProviderError:
            raise
        except Exception as exc:
            self._logger.error("provider_stream_failed", error=str(exc))
            raise ProviderError(f"{self._model}: {exc}") from exc

        for index in sorted(pending):
            slot = pending[index]
            try:
                arguments = json.loads(slot["arguments"]) if slot["arguments"] else {}
            except json.JSONDecodeError as exc:
                raise ProviderError(
                    f"Malformed arguments for tool {slot['name']!r}: {slot['arguments']!r}"
                ) from exc
            yield ToolCallRequest(id=slot["id"], name=slot["name"], arguments=arguments)
