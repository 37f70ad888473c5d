"""Context window assembly for the next provider request."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from llmtui.context.state import SessionContext
from llmtui.errors import ContextOverflow
from llmtui.models.message import Summary
from llmtui.models.tool import FileContextEntry
from llmtui.providers.base import ProviderMessage


@dataclass
class AssembledContext:
    """The exact payload for the next provider call."""

    messages: list[ProviderMessage]
    token_estimate: int
    context_window: int
    summary_count: int = 0
    file_count: int = 0

    @property
    def fraction_used(self) -> float:
        return self.token_estimate / self.context_window if self.context_window > 0 else 0.0


def render_summary(summary: Summary) -> str:
    return (
        f"[SUMMARY of messages {summary.range_start}-{summary.range_end}]\n"
        f"{summary.text}\n"
        f"[/SUMMARY]"
    )


def render_file(entry: FileContextEntry) -> str:
    return f"[FILE: {entry.path}]\n{entry.content}\n[/FILE]"


class ContextAssembler:
    """
    Builds the ordered message list sent to the provider on each request.

    Order:
    1. The system preamble.
    2. Every summary, by range start.
    3. Every uncompacted finalized message, by ordinal. Drafts are excluded.
    4. Every file snapshot still held in the tool-result cache, oldest read first.

    Nothing is ever dropped to make the payload fit. If the estimate exceeds
    the window the build fails with :class:`~llmtui.errors.ContextOverflow`
    and the caller decides what to do (e.g. a manual compaction pass).
    """

    def __init__(self, ctx: SessionContext) -> None:
        self._ctx = ctx
        self._logger = structlog.get_logger("llmtui.context").bind(session_id=ctx.session_id)

    def build(self, system_prompt: str, context_window: int) -> AssembledContext:
        """
        Assemble the context for the next call.

        Args:
            system_prompt: The system preamble (counted against the window).
            context_window: The active provider's token limit.

        Raises:
            ContextOverflow: If the assembled estimate exceeds ``context_window``.
        """
        estimate = self._ctx.accountant.estimate
        messages: list[ProviderMessage] = []
        total = 0

        if system_prompt:
            messages.append(ProviderMessage(role="system", content=system_prompt))
            total += estimate(system_prompt)

        summaries = sorted(self._ctx.log.summaries(), key=lambda s: s.range_start)
        for summary in summaries:
            messages.append(ProviderMessage(role="assistant", content=render_summary(summary)))
            total += summary.token_count

        for message in self._ctx.log.uncompacted():
            messages.append(
                ProviderMessage(
                    role=message.role,
                    content=message.content,
                    tool_call_id=message.tool_call_id,
                )
            )
            total += message.token_count

        files = self._ctx.cache.file_entries(self._ctx.session_id)
        for entry in files:
            block = render_file(entry)
            messages.append(ProviderMessage(role="user", content=block))
            total += estimate(block)

        if total > context_window:
            self._logger.warning("context_overflow", estimated=total, window=context_window)
            raise ContextOverflow(estimated=total, window=context_window)

        self._logger.debug(
            "context_assembled",
            messages=len(messages),
            summaries=len(summaries),
            files=len(files),
            tokens=total,
        )
        return AssembledContext(
            messages=messages,
            token_estimate=total,
            context_window=context_window,
            summary_count=len(summaries),
            file_count=len(files),
        )
