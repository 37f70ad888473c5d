"""ChatSession: the public entry point for one conversation."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from ulid import ULID

from llmtui.compaction.engine import Compactor
from llmtui.context.assembler import AssembledContext, ContextAssembler
from llmtui.context.state import SessionContext
from llmtui.errors import CorruptStateError, PersistenceError, ProviderError
from llmtui.events.bus import EventBus, SessionEvent
from llmtui.models.config import AutosaveMode, LlmTuiConfig, StoreConfig
from llmtui.models.message import CompactionResult, Message, Summary, TurnResult
from llmtui.models.session import SessionInfo
from llmtui.models.tool import ToolCall, ToolDecision
from llmtui.providers.base import (
    CompletionProvider,
    ConfirmationPrompt,
    StreamEvent,
    TextChunk,
    ToolCallRequest,
)
from llmtui.providers.litellm_provider import LiteLLMProvider
from llmtui.store.log import Draft
from llmtui.store.pool import StorePool
from llmtui.store.sqlite import SqliteStore, WriteBatch
from llmtui.tools.capabilities import ToolCapability
from llmtui.tools.controller import ToolInvocationController

ChunkCallback = Callable[[str], None | Awaitable[None]]

_END_OF_STREAM = object()


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"sess"``, ``"sum"``, ``"call"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


def render_tool_request(call: ToolCall) -> str:
    """The line recorded in the assistant message for each tool call it requested."""
    return f"\n[TOOL CALL {call.id}] {call.name} {json.dumps(call.args, sort_keys=True)}"


class DenyAllConfirmation:
    """Confirmation prompt used when the caller supplies none: every call is denied."""

    async def ask(self, call: ToolCall) -> ToolDecision:
        return ToolDecision.DENIED


class Autosaver:
    """Background task that saves the session every ``interval`` seconds."""

    def __init__(self, save: Callable[[], Awaitable[bool]], interval: float, session_id: str) -> None:
        self._save = save
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self._logger = structlog.get_logger("llmtui.autosave").bind(session_id=session_id)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        self._logger.debug("autosave_started", interval=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.wait({self._task})
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._save()
            except Exception as exc:
                self._logger.exception("autosave_crashed", error=str(exc))


class ChatSession:
    """
    One conversation with a completion provider.

    Owns the session's :class:`~llmtui.context.state.SessionContext` and wires
    the message log, token accountant, tool controller, compactor and context
    assembler together.

    Usage::

        async with ChatSession.open(config=LlmTuiConfig.from_toml()) as session:
            result = await session.send("Summarise notes.md", on_chunk=print)
            print(result.text)

        # Later, in another process
        session = await ChatSession.load(session_id)
        ctx = session.context_for_next_turn()   # restored summaries and file snapshots
        await session.close()

    Persistence follows ``config.autosave.mode``: ``onsend`` saves after the
    user message and after each turn, ``timer`` saves on an interval, and
    ``disabled`` saves only on explicit :meth:`save`. A failed save never
    raises; the session is flagged ``unsynced`` and the next save retries.
    """

    def __init__(
        self,
        info: SessionInfo,
        *,
        config: LlmTuiConfig,
        store: SqliteStore,
        ctx: SessionContext,
        provider: CompletionProvider,
        controller: ToolInvocationController,
        compactor: Compactor,
        assembler: ContextAssembler,
    ) -> None:
        self._info = info
        self._config = config
        self._store = store
        self._ctx = ctx
        self._provider = provider
        self._controller = controller
        self._compactor = compactor
        self._assembler = assembler
        self._autosaver = Autosaver(self.save, config.autosave.interval_seconds, info.id)
        self._closed = False
        self._logger = structlog.get_logger("llmtui.session").bind(session_id=info.id)

    # ── Construction ───────────────────────────────────────────────────────────

    @classmethod
    async def create(
        cls,
        *,
        name: str | None = None,
        project: str | None = None,
        provider_name: str | None = None,
        config: LlmTuiConfig | None = None,
        provider: CompletionProvider | None = None,
        confirmation: ConfirmationPrompt | None = None,
        capabilities: dict[str, ToolCapability] | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
    ) -> ChatSession:
        """
        Create and persist a new session.

        Args:
            name: Optional display name.
            project: Optional project tag for grouping in :meth:`list_sessions`.
            provider_name: Key into ``config.providers``. Defaults to
                ``config.default_provider``.
            config: Configuration. Defaults to ``LlmTuiConfig()``.
            provider: Completion backend. Defaults to a :class:`LiteLLMProvider`
                for the provider's configured model.
            confirmation: Prompt consulted before each tool call. Defaults to
                denying every call.
            capabilities: Tool capabilities by name. Defaults to the built-in set.
            db_path: Override database path (useful for testing).
            pool: Optional shared connection pool. The caller closes it.

        Raises:
            ValueError: If ``provider_name`` is unknown, or both ``db_path`` and
                ``config.store.db_path`` are supplied.
        """
        cfg = _resolve_config(config, db_path)
        provider_key = provider_name or cfg.default_provider
        provider_cfg = cfg.provider(provider_key)

        store = SqliteStore(cfg.store, pool=pool)
        await store.initialize()
        info = await store.create_session(
            make_id("sess"),
            name=name,
            project=project,
            provider=provider_key,
            model=provider_cfg.model,
        )

        session = cls._build(info, cfg, store, provider, confirmation, capabilities)
        session._start()
        session._ctx.event_bus.publish(
            SessionEvent.SESSION_CREATED,
            {"session_id": info.id, "provider": info.provider, "model": info.model},
        )
        session._logger.info("session_created", provider=info.provider, model=info.model)
        return session

    @classmethod
    @asynccontextmanager
    async def open(cls, **kwargs: Any) -> AsyncGenerator[ChatSession, None]:
        """
        Create a new session and close it when the ``async with`` block exits.

        Accepts the same keyword arguments as :meth:`create`.
        """
        session = await cls.create(**kwargs)
        try:
            yield session
        finally:
            await session.close()

    @classmethod
    async def load(
        cls,
        session_id: str,
        *,
        config: LlmTuiConfig | None = None,
        provider: CompletionProvider | None = None,
        confirmation: ConfirmationPrompt | None = None,
        capabilities: dict[str, ToolCapability] | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
    ) -> ChatSession:
        """
        Reopen a persisted session.

        Restores the message log, summaries, tool calls and cached tool
        results, recomputes the token total from the restored log, and fails
        any tool call that was interrupted mid-execution. Calls still awaiting
        confirmation are left for :meth:`resume_pending`.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        cfg = _resolve_config(config, db_path)
        store = SqliteStore(cfg.store, pool=pool)
        await store.initialize()
        stored = await store.load_session(session_id)

        info = stored.info
        if info.provider not in cfg.providers:
            structlog.get_logger("llmtui.session").warning(
                "unknown_stored_provider",
                session_id=session_id,
                provider=info.provider,
                fallback=cfg.default_provider,
            )
            info = info.model_copy(
                update={
                    "provider": cfg.default_provider,
                    "model": cfg.provider().model,
                }
            )

        session = cls._build(info, cfg, store, provider, confirmation, capabilities)
        ctx = session._ctx
        async with ctx.lock:
            ctx.log.restore(stored.messages, stored.summaries, stored.next_ordinal)
            ctx.cache.load(session_id, stored.file_entries, stored.tool_results)
            ctx.restore_calls(stored.tool_calls)
            ctx.accountant.recompute()

        await session._controller.recover_interrupted()
        session._start()
        ctx.event_bus.publish(
            SessionEvent.SESSION_LOADED,
            {"session_id": info.id, "provider": info.provider, "model": info.model},
        )
        session._logger.info(
            "session_loaded",
            messages=len(ctx.log),
            summaries=len(ctx.log.summaries()),
            tokens=ctx.accountant.total,
        )
        return session

    @classmethod
    def _build(
        cls,
        info: SessionInfo,
        cfg: LlmTuiConfig,
        store: SqliteStore,
        provider: CompletionProvider | None,
        confirmation: ConfirmationPrompt | None,
        capabilities: dict[str, ToolCapability] | None,
    ) -> ChatSession:
        ctx = SessionContext(info.id, event_bus=EventBus(), token_encoding=cfg.token_encoding)
        backend = provider or LiteLLMProvider(info.model or cfg.provider(info.provider).model)
        controller = ToolInvocationController(
            ctx,
            confirmation or DenyAllConfirmation(),
            cfg.tools,
            capabilities,
            id_generator=make_id,
        )
        compactor = Compactor(ctx, backend, cfg.compaction, id_generator=make_id)
        return cls(
            info,
            config=cfg,
            store=store,
            ctx=ctx,
            provider=backend,
            controller=controller,
            compactor=compactor,
            assembler=ContextAssembler(ctx),
        )

    def _start(self) -> None:
        if self._config.autosave.mode is AutosaveMode.TIMER:
            self._autosaver.start()

    # ── Listing / deletion ─────────────────────────────────────────────────────

    @staticmethod
    async def list_sessions(
        *,
        project: str | None = None,
        limit: int = 100,
        offset: int = 0,
        config: LlmTuiConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
    ) -> list[SessionInfo]:
        """Persisted sessions, most recently updated first."""
        store = SqliteStore(_resolve_config(config, db_path).store, pool=pool)
        await store.initialize()
        try:
            return await store.list_sessions(project=project, limit=limit, offset=offset)
        finally:
            await store.close()

    @staticmethod
    async def delete(
        session_id: str,
        *,
        config: LlmTuiConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
    ) -> None:
        """
        Delete a persisted session and everything it owns.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        store = SqliteStore(_resolve_config(config, db_path).store, pool=pool)
        await store.initialize()
        try:
            await store.delete_session(session_id)
        finally:
            await store.close()

    # ── Turn loop ──────────────────────────────────────────────────────────────

    async def send(
        self,
        text: str,
        *,
        on_chunk: ChunkCallback | None = None,
        system_prompt: str | None = None,
    ) -> TurnResult:
        """
        Send a user message and stream the assistant's response.

        Tool calls requested by the stream are run through the tool controller
        once the stream ends, and the provider is called again with the
        results, up to ``tools.max_tool_rounds`` rounds.

        Args:
            text: The user message.
            on_chunk: Called with each streamed text piece; may be async.
            system_prompt: Override the configured system prompt for this turn.

        Returns:
            TurnResult describing the assistant output of the turn.

        Raises:
            ContextOverflow: If the assembled context does not fit the
                provider's window. The user message stays in the log.
            ProviderError: If the provider fails. The partial response of the
                failing round is discarded.
        """
        ctx = self._ctx
        ctx.stream_cancel.clear()
        sys_prompt = self._config.system_prompt if system_prompt is None else system_prompt
        window = self.context_window

        await ctx.append_message("user", text)
        if self._config.autosave.mode is AutosaveMode.ONSEND:
            await self.save()

        streamed: list[str] = []
        assistant_ordinals: list[int] = []
        call_ids: list[str] = []
        rounds = 0
        cancelled = False

        while True:
            context = self._assembler.build(sys_prompt, window)
            draft = ctx.log.open_draft("assistant")
            requests, cancelled = await self._stream(context, draft, on_chunk)
            streamed.append(draft.text)

            calls = [] if cancelled else [self._controller.propose(r) for r in requests]
            for call in calls:
                draft.append(render_tool_request(call))
            message = await ctx.finalize_draft(draft)
            if message is not None:
                assistant_ordinals.append(message.ordinal)

            if cancelled or not calls:
                break
            for call in calls:
                finished = await self._controller.process(call)
                call_ids.append(finished.id)
            rounds += 1

            if ctx.stream_cancel.is_set():
                cancelled = True
                break
            if rounds >= self._config.tools.max_tool_rounds:
                self._logger.warning("tool_round_limit_reached", rounds=rounds)
                break

        triggered = self._compactor.check_and_trigger(window)
        if self._config.autosave.mode is AutosaveMode.ONSEND:
            await self.save()

        return TurnResult(
            text="".join(streamed),
            assistant_ordinals=assistant_ordinals,
            tool_call_ids=call_ids,
            tool_rounds=rounds,
            cancelled=cancelled,
            compaction_triggered=triggered,
            total_tokens=ctx.accountant.total,
        )

    async def _stream(
        self,
        context: AssembledContext,
        draft: Draft,
        on_chunk: ChunkCallback | None,
    ) -> tuple[list[ToolCallRequest], bool]:
        """
        Consume one provider response into *draft*.

        A producer task drains the provider into a queue; this coroutine is
        the single consumer. Setting ``stream_cancel`` stops consumption and
        cancels the producer, leaving whatever arrived in the draft.

        Returns:
            The tool requests seen, and whether the stream was cancelled.
        """
        ctx = self._ctx
        queue: asyncio.Queue[Any] = asyncio.Queue()
        tools = self._controller.definitions()

        async def produce() -> None:
            try:
                async for event in self._provider.send(context.messages, tools=tools):
                    queue.put_nowait(event)
            finally:
                queue.put_nowait(_END_OF_STREAM)

        producer = asyncio.create_task(produce())
        cancel_wait = asyncio.create_task(ctx.stream_cancel.wait())
        requests: list[ToolCallRequest] = []
        cancelled = False
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {getter, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter not in done:
                    getter.cancel()
                    cancelled = True
                    break
                event: StreamEvent | object = getter.result()
                if event is _END_OF_STREAM:
                    break
                if isinstance(event, TextChunk):
                    draft.append(event.text)
                    if on_chunk is not None:
                        result = on_chunk(event.text)
                        if asyncio.iscoroutine(result):
                            await result
                elif isinstance(event, ToolCallRequest):
                    requests.append(event)
        except BaseException:
            ctx.log.discard_draft(draft)
            raise
        finally:
            cancel_wait.cancel()
            if not producer.done():
                producer.cancel()
            await asyncio.wait({producer})

        error = None if producer.cancelled() else producer.exception()
        if cancelled:
            self._logger.info("stream_cancelled", received=len(draft.text))
            return [], True
        if error is not None:
            ctx.log.discard_draft(draft)
            self._logger.error("provider_stream_failed", error=str(error))
            if isinstance(error, ProviderError):
                raise error
            raise ProviderError(f"Provider stream failed: {error}") from error
        return requests, False

    def cancel(self) -> None:
        """Stop the streaming response and any executing tool call."""
        self._ctx.stream_cancel.set()
        self._controller.cancel_current()
        self._logger.info("turn_cancel_requested")

    async def resume_pending(self) -> list[ToolCall]:
        """Ask again about tool calls restored while awaiting confirmation."""
        return await self._controller.resume_pending()

    # ── Compaction / context ───────────────────────────────────────────────────

    async def compact(self) -> CompactionResult:
        """
        Compact now, bypassing the threshold.

        Raises:
            ProviderError: If summarisation failed; the log is unchanged.
        """
        self._logger.info("manual_compaction_requested")
        return await self._compactor.compact()

    def context_for_next_turn(self, system_prompt: str | None = None) -> AssembledContext:
        """
        The exact payload the next provider call would receive.

        Raises:
            ContextOverflow: If it does not fit the provider's window.
        """
        sys_prompt = self._config.system_prompt if system_prompt is None else system_prompt
        return self._assembler.build(sys_prompt, self.context_window)

    def messages(self) -> list[Message]:
        """Finalized messages (compacted ones included), by ordinal."""
        return self._ctx.log.messages()

    def summaries(self) -> list[Summary]:
        return self._ctx.log.summaries()

    def repair(self) -> bool:
        """
        Check the token total against the log and recompute it if they disagree.

        Returns:
            True if a repair was made.
        """
        try:
            self._ctx.accountant.verify()
        except CorruptStateError as exc:
            recomputed = self._ctx.accountant.recompute()
            self._logger.warning("state_repaired", tracked=exc.actual, recomputed=recomputed)
            self._ctx.event_bus.publish(
                SessionEvent.STATE_REPAIRED,
                {"session_id": self.id, "tracked": exc.actual, "recomputed": recomputed},
            )
            return True
        return False

    # ── Persistence ────────────────────────────────────────────────────────────

    async def save(self) -> bool:
        """
        Write every pending change in one transaction.

        Never raises for a storage failure: the error is logged, published as
        ``PERSISTENCE_FAILED``, and the session is flagged ``unsynced`` with its
        in-memory state intact so the next save retries.

        Returns:
            True if the state on disk is now current.
        """
        ctx = self._ctx
        async with ctx.lock:
            messages, summaries = ctx.log.pending_writes()
            files, results = ctx.cache.pending_writes(self.id)
            calls = ctx.pending_calls()
            batch = WriteBatch(
                session_id=self.id,
                next_ordinal=ctx.log.next_ordinal,
                messages=messages,
                summaries=summaries,
                tool_calls=calls,
                file_entries=files,
                tool_results=results,
            )
            if batch.empty:
                return not ctx.unsynced
            try:
                await self._store.save_batch(batch)
            except PersistenceError as exc:
                ctx.unsynced = True
                self._logger.error("save_failed", error=str(exc))
                ctx.event_bus.publish(
                    SessionEvent.PERSISTENCE_FAILED, {"session_id": self.id, "error": str(exc)}
                )
                return False
            ctx.log.mark_synced(messages, summaries)
            ctx.cache.mark_synced(self.id, [*files, *results])
            ctx.mark_calls_synced(calls)
            ctx.unsynced = False

        rows = len(messages) + len(summaries) + len(calls) + len(files) + len(results)
        self._logger.debug("session_saved", rows=rows)
        ctx.event_bus.publish(SessionEvent.PERSISTENCE_SAVED, {"session_id": self.id, "rows": rows})
        return True

    # ── Metadata ───────────────────────────────────────────────────────────────

    async def rename(self, name: str) -> SessionInfo:
        """Set the display name."""
        self._info = await self._store.update_session(self.id, name=name)
        self._publish_updated()
        return self._info

    async def set_provider(
        self, provider_name: str, provider: CompletionProvider | None = None
    ) -> SessionInfo:
        """
        Switch the active provider for subsequent turns and compactions.

        Raises:
            ValueError: If ``provider_name`` is not configured.
        """
        provider_cfg = self._config.provider(provider_name)
        backend = provider or LiteLLMProvider(provider_cfg.model)
        self._info = await self._store.update_session(
            self.id, provider=provider_name, model=provider_cfg.model
        )
        self._provider = backend
        self._compactor.provider = backend
        self._publish_updated()
        return self._info

    def _publish_updated(self) -> None:
        self._ctx.event_bus.publish(
            SessionEvent.SESSION_UPDATED,
            {"session_id": self.id, "name": self._info.name, "provider": self._info.provider},
        )

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """
        Wait for background compaction, save, and release the store.

        The final save is skipped when autosave is ``disabled``.
        """
        if self._closed:
            return
        self._closed = True
        await self._autosaver.stop()
        await self._compactor.wait_for_pending()
        if self._config.autosave.mode is not AutosaveMode.DISABLED:
            await self.save()
        self._ctx.event_bus.publish(SessionEvent.SESSION_CLOSED, {"session_id": self.id})
        await self._ctx.event_bus.drain()
        self._ctx.cache.drop(self.id)
        await self._store.close()
        self._logger.info("session_closed", unsynced=self._ctx.unsynced)

    async def __aenter__(self) -> ChatSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ── Properties ─────────────────────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self._info.id

    @property
    def info(self) -> SessionInfo:
        return self._info

    @property
    def context(self) -> SessionContext:
        """The per-session state object."""
        return self._ctx

    @property
    def config(self) -> LlmTuiConfig:
        return self._config

    @property
    def provider(self) -> CompletionProvider:
        return self._provider

    @property
    def controller(self) -> ToolInvocationController:
        return self._controller

    @property
    def compactor(self) -> Compactor:
        return self._compactor

    @property
    def context_window(self) -> int:
        """Token limit of the active provider."""
        return self._config.context_window_for(self._info.provider)

    @property
    def token_total(self) -> int:
        return self._ctx.accountant.total

    @property
    def compacting(self) -> bool:
        """``True`` while a compaction run is in flight."""
        return self._ctx.compacting

    @property
    def unsynced(self) -> bool:
        """``True`` when the last save failed and changes are held only in memory."""
        return self._ctx.unsynced

    @property
    def event_bus(self) -> EventBus:
        return self._ctx.event_bus

    def subscribe(self, event: SessionEvent, handler: Any) -> None:
        """Convenience wrapper for ``session.event_bus.subscribe()``."""
        self._ctx.event_bus.subscribe(event, handler)


def _resolve_config(config: LlmTuiConfig | None, db_path: str | None) -> LlmTuiConfig:
    cfg = config or LlmTuiConfig()
    if db_path is None:
        return cfg
    if config is not None and cfg.store.db_path != StoreConfig().db_path:
        raise ValueError("Specify db_path either via db_path= or config.store.db_path, not both.")
    return cfg.model_copy(update={"store": cfg.store.model_copy(update={"db_path": db_path})})
