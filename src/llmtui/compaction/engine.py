"""Threshold-triggered compaction of old messages into summaries.

Selection: the finalized messages are taken in ordinal order and the newest
``keep_recent`` are set aside. Of the rest, the earliest maximal run of
consecutive uncompacted messages is the eligible range. Because summarised
messages are flagged, a second run over the same log finds nothing new and
is a no-op.

Commit: the summary and the ``compacted`` flags are applied together under the
session lock, and the accountant is moved by ``- range tokens + summary tokens``
in the same critical section. A provider failure, a timeout, or an empty
summary leaves the log untouched.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from llmtui.compaction.prompts import render_summary_prompt
from llmtui.context.state import SessionContext
from llmtui.errors import ProviderError
from llmtui.events.bus import SessionEvent
from llmtui.models.config import CompactionConfig
from llmtui.models.message import CompactionResult, Message, Summary
from llmtui.providers.base import CompletionProvider, ProviderMessage, complete_text
from llmtui.store.log import LogIntegrityError


class Compactor:
    """
    Decides when and what to summarise, and applies the result atomically.

    At most one run is in flight per session: runs are serialized by an
    internal lock and the session context's ``compacting`` flag is set for the
    duration, so the interactive side can show a "compacting" indicator.

    Example::

        compactor = Compactor(ctx, provider, config.compaction)
        if compactor.check_and_trigger(context_window=4096):   # non-blocking
            ...
        result = await compactor.compact()                      # manual, threshold bypassed
    """

    def __init__(
        self,
        ctx: SessionContext,
        provider: CompletionProvider,
        config: CompactionConfig,
        id_generator: Callable[[str], str] | None = None,
    ) -> None:
        self._ctx = ctx
        self._provider = provider
        self._config = config
        self._id_gen = id_generator or _default_id_generator
        self._run_lock = asyncio.Lock()
        self._logger = structlog.get_logger("llmtui.compaction").bind(session_id=ctx.session_id)

    @property
    def provider(self) -> CompletionProvider:
        return self._provider

    @provider.setter
    def provider(self, provider: CompletionProvider) -> None:
        self._provider = provider

    # ── Selection ───────────────────────────────────────────────────────────────

    def eligible_range(self) -> list[Message]:
        """
        Return the messages the next run would summarise (may be empty).

        The keep-recent boundary is counted over finalized messages, so the
        newest ``keep_recent`` messages are never included.
        """
        finalized = self._ctx.log.messages()
        keep = self._config.keep_recent
        candidates = finalized[: len(finalized) - keep] if keep else finalized

        run: list[Message] = []
        for message in candidates:
            if message.compacted:
                if run:
                    break
                continue
            run.append(message)
        return run

    def should_compact(self, context_window: int) -> bool:
        """
        Return True when auto-compaction should start now.

        Requires ``auto`` to be enabled, no run in flight, the accountant at
        or above ``threshold`` of *context_window*, and a non-empty eligible range.
        """
        if not self._config.auto or self._ctx.compacting:
            return False
        if self._ctx.accountant.percentage_of(context_window) < self._config.threshold:
            return False
        return bool(self.eligible_range())

    # ── Trigger / scheduling ────────────────────────────────────────────────────

    def check_and_trigger(self, context_window: int) -> bool:
        """
        Schedule a background compaction if :meth:`should_compact` says so.

        Non-blocking. The task handle is kept on the session context so
        :meth:`wait_for_pending` (and session close) can await it. Failures
        inside the task are logged and published, never raised here.

        Returns:
            True if a run was scheduled.
        """
        pending = self._ctx.compaction_task
        if pending is not None and not pending.done():
            return False
        if not self.should_compact(context_window):
            return False

        self._logger.info(
            "compaction_triggered",
            tokens=self._ctx.accountant.total,
            context_window=context_window,
        )
        self._ctx.compaction_task = asyncio.create_task(self._background())
        return True

    async def _background(self) -> CompactionResult | None:
        try:
            return await self._run(manual=False)
        except (ProviderError, LogIntegrityError) as exc:
            self._logger.warning("background_compaction_failed", error=str(exc))
            return None

    async def wait_for_pending(self) -> None:
        """Await any in-flight background compaction task, then clear it."""
        task = self._ctx.compaction_task
        if task is not None and not task.done():
            try:
                await task
            except Exception as exc:
                self._logger.exception("background_compaction_crashed", error=str(exc))
        self._ctx.compaction_task = None

    # ── Public compaction entry point ───────────────────────────────────────────

    async def compact(self) -> CompactionResult:
        """
        Run compaction now, bypassing the threshold.

        Waits for any background run first, so manual and automatic runs never
        overlap.

        Returns:
            The result; ``result.summary`` is None when nothing was eligible.

        Raises:
            ProviderError: If summarisation failed, timed out, or came back empty.
                No message has been flagged in that case.
        """
        await self.wait_for_pending()
        return await self._run(manual=True)

    # ── Internal implementation ─────────────────────────────────────────────────

    async def _run(self, *, manual: bool) -> CompactionResult:
        async with self._run_lock:
            self._ctx.compacting = True
            try:
                return await self._run_inner(manual=manual)
            finally:
                self._ctx.compacting = False

    async def _run_inner(self, *, manual: bool) -> CompactionResult:
        ctx = self._ctx
        start_ms = time.time() * 1000
        tokens_before = ctx.accountant.total

        selected = self.eligible_range()
        if not selected:
            self._logger.info("compaction_noop", manual=manual)
            return CompactionResult(
                session_id=ctx.session_id,
                tokens_before=tokens_before,
                tokens_after=tokens_before,
                elapsed_ms=time.time() * 1000 - start_ms,
            )

        ctx.event_bus.publish(
            SessionEvent.COMPACTION_TRIGGERED,
            {"session_id": ctx.session_id, "tokens": tokens_before, "manual": manual},
        )

        try:
            text = await self._summarise(selected)
        except ProviderError as exc:
            self._logger.error(
                "compaction_failed",
                error=str(exc),
                range_start=selected[0].ordinal,
                range_end=selected[-1].ordinal,
            )
            ctx.event_bus.publish(
                SessionEvent.COMPACTION_FAILED,
                {"session_id": ctx.session_id, "error": str(exc)},
            )
            raise

        summary = Summary(
            id=self._id_gen("sum"),
            session_id=ctx.session_id,
            range_start=selected[0].ordinal,
            range_end=selected[-1].ordinal,
            text=text,
            token_count=ctx.accountant.estimate(text),
        )

        async with ctx.lock:
            flagged = ctx.log.commit_summary(summary)
            ctx.accountant.remove(sum(m.token_count for m in flagged))
            ctx.accountant.add(summary.token_count)
            tokens_after = ctx.accountant.total

        result = CompactionResult(
            session_id=ctx.session_id,
            summary=summary,
            compacted_message_count=len(flagged),
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            elapsed_ms=time.time() * 1000 - start_ms,
        )
        self._logger.info(
            "compaction_completed",
            range_start=summary.range_start,
            range_end=summary.range_end,
            compacted=len(flagged),
            tokens_before=tokens_before,
            tokens_after=tokens_after,
        )
        ctx.event_bus.publish(SessionEvent.COMPACTION_COMPLETED, result.model_dump())
        return result

    async def _summarise(self, selected: list[Message]) -> str:
        prompt = render_summary_prompt(selected, self._config.summary_prompt)
        request = [ProviderMessage(role="user", content=prompt)]
        try:
            text = await asyncio.wait_for(
                complete_text(self._provider, request),
                timeout=self._config.summary_timeout_seconds,
            )
        except TimeoutError as exc:
            raise ProviderError(
                f"Summary timed out after {self._config.summary_timeout_seconds}s"
            ) from exc
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"Summary request failed: {exc}") from exc
        text = text.strip()
        if not text:
            raise ProviderError("Provider returned an empty summary")
        return text


def _default_id_generator(prefix: str) -> str:
    from llmtui.session import make_id

    return make_id(prefix)

