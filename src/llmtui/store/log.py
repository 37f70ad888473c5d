"""In-memory, append-only conversation log for a single session."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from llmtui.errors import LlmTuiError
from llmtui.models.message import Message, Role, Summary, now_ms


class LogIntegrityError(LlmTuiError):
    """Raised when a mutation would break the log's ordering or compaction rules."""


@dataclass
class Draft:
    """
    A message still being streamed.

    The ordinal is reserved when the draft opens. Drafts are invisible to
    accounting, compaction, context assembly and persistence until
    :meth:`MessageStore.finalize_draft` turns them into a :class:`Message`.
    """

    session_id: str
    ordinal: int
    role: Role
    created_at: int = field(default_factory=now_ms)
    chunks: list[str] = field(default_factory=list)

    def append(self, text: str) -> None:
        self.chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


class MessageStore:
    """
    Ordered log of Messages and Summaries for one session.

    Guarantees:
    - Ordinals are assigned here, strictly increase, and are never reused,
      including ordinals reserved by drafts that were later discarded.
    - Compaction only flags messages; nothing is deleted or renumbered.
    - Summary ranges are disjoint and monotonically increasing.

    The store is not locked internally. Callers serialize mutation through
    the owning session's lock.

    Every change is remembered as a pending write until :meth:`mark_synced`
    is called with the snapshot that was persisted.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._messages: dict[int, Message] = {}
        self._summaries: list[Summary] = []
        self._drafts: dict[int, Draft] = {}
        self._next_ordinal = 1
        self._dirty_messages: set[int] = set()
        self._dirty_summaries: set[str] = set()
        self._logger = structlog.get_logger("llmtui.store.log").bind(session_id=session_id)

    # ── Appending ──────────────────────────────────────────────────────────────

    def _reserve_ordinal(self) -> int:
        ordinal = self._next_ordinal
        self._next_ordinal += 1
        return ordinal

    def append(
        self,
        role: Role,
        content: str,
        *,
        token_count: int,
        tool_call_id: str | None = None,
    ) -> int:
        """
        Append a finalized message and return its ordinal.

        Args:
            role: Message role.
            content: Message text.
            token_count: Token cost, fixed at creation.
            tool_call_id: Originating tool call for ``tool`` messages.

        Returns:
            The newly assigned ordinal.
        """
        ordinal = self._reserve_ordinal()
        self._messages[ordinal] = Message(
            session_id=self.session_id,
            ordinal=ordinal,
            role=role,
            content=content,
            token_count=token_count,
            tool_call_id=tool_call_id,
        )
        self._dirty_messages.add(ordinal)
        return ordinal

    def open_draft(self, role: Role = "assistant") -> Draft:
        """Reserve the next ordinal for a streaming message."""
        draft = Draft(session_id=self.session_id, ordinal=self._reserve_ordinal(), role=role)
        self._drafts[draft.ordinal] = draft
        return draft

    def finalize_draft(self, draft: Draft, *, token_count: int) -> Message:
        """
        Turn *draft* into a finalized message with a fixed token count.

        Raises:
            LogIntegrityError: If the draft is not open in this log.
        """
        if self._drafts.pop(draft.ordinal, None) is not draft:
            raise LogIntegrityError(f"Draft {draft.ordinal} is not open")
        message = Message(
            session_id=self.session_id,
            ordinal=draft.ordinal,
            role=draft.role,
            content=draft.text,
            token_count=token_count,
            created_at=draft.created_at,
        )
        self._messages[draft.ordinal] = message
        self._dirty_messages.add(draft.ordinal)
        return message

    def discard_draft(self, draft: Draft) -> None:
        """Drop an open draft. Its ordinal stays burned."""
        if self._drafts.pop(draft.ordinal, None) is not None:
            self._logger.debug("draft_discarded", ordinal=draft.ordinal)

    @property
    def open_drafts(self) -> list[Draft]:
        return [self._drafts[o] for o in sorted(self._drafts)]

    # ── Compaction ─────────────────────────────────────────────────────────────

    def _check_compactable(self, ordinals: list[int]) -> None:
        for ordinal in ordinals:
            if ordinal in self._drafts:
                raise LogIntegrityError(f"Ordinal {ordinal} is still a draft")
            message = self._messages.get(ordinal)
            if message is None:
                raise LogIntegrityError(f"Unknown ordinal {ordinal}")
            if message.compacted:
                raise LogIntegrityError(f"Ordinal {ordinal} is already compacted")

    def mark_compacted(self, ordinals: list[int]) -> list[Message]:
        """
        Flag the given messages as compacted.

        All ordinals are validated before any flag is flipped.

        Returns:
            The updated messages.

        Raises:
            LogIntegrityError: If an ordinal is unknown, a draft, or already compacted.
        """
        self._check_compactable(ordinals)
        updated: list[Message] = []
        for ordinal in ordinals:
            message = self._messages[ordinal].model_copy(update={"compacted": True})
            self._messages[ordinal] = message
            self._dirty_messages.add(ordinal)
            updated.append(message)
        return updated

    def _check_summary(self, summary: Summary) -> None:
        if summary.session_id != self.session_id:
            raise LogIntegrityError(
                f"Summary {summary.id} belongs to session {summary.session_id!r}"
            )
        if self._summaries and summary.range_start <= self._summaries[-1].range_end:
            raise LogIntegrityError(
                f"Summary range {summary.range_start}-{summary.range_end} overlaps or precedes "
                f"{self._summaries[-1].range_start}-{self._summaries[-1].range_end}"
            )
        if summary.range_end >= self._next_ordinal:
            raise LogIntegrityError(f"Summary range ends past the log ({summary.range_end})")

    def insert_summary(self, summary: Summary) -> None:
        """
        Add a summary after the last existing one.

        Raises:
            LogIntegrityError: If the range overlaps or precedes an existing summary.
        """
        self._check_summary(summary)
        self._summaries.append(summary)
        self._dirty_summaries.add(summary.id)

    def commit_summary(self, summary: Summary) -> list[Message]:
        """
        Insert *summary* and flag every message in its range, or do neither.

        Returns:
            The messages that were flagged.

        Raises:
            LogIntegrityError: If either half would be rejected.
        """
        ordinals = [
            o for o in sorted(self._messages) if summary.range_start <= o <= summary.range_end
        ]
        if not ordinals:
            raise LogIntegrityError(
                f"Summary range {summary.range_start}-{summary.range_end} covers no messages"
            )
        if any(summary.range_start <= o <= summary.range_end for o in self._drafts):
            raise LogIntegrityError("Summary range covers an open draft")
        self._check_summary(summary)
        self._check_compactable(ordinals)
        flagged = self.mark_compacted(ordinals)
        self.insert_summary(summary)
        return flagged

    # ── Views ──────────────────────────────────────────────────────────────────

    def get(self, ordinal: int) -> Message:
        try:
            return self._messages[ordinal]
        except KeyError:
            raise LogIntegrityError(f"Unknown ordinal {ordinal}") from None

    def messages(self) -> list[Message]:
        """All finalized messages, by ordinal."""
        return [self._messages[o] for o in sorted(self._messages)]

    def uncompacted(self) -> list[Message]:
        """Finalized messages not folded into a summary, by ordinal."""
        return [m for m in self.messages() if not m.compacted]

    def summaries(self) -> list[Summary]:
        """All summaries, by range start."""
        return list(self._summaries)

    def ordered_view(self) -> list[Message | Summary]:
        """Messages and summaries together, in creation order."""
        items: list[tuple[tuple[int, int, int], Message | Summary]] = [
            ((m.created_at, 0, m.ordinal), m) for m in self._messages.values()
        ]
        items.extend(((s.created_at, 1, s.range_start), s) for s in self._summaries)
        items.sort(key=lambda pair: pair[0])
        return [record for _, record in items]

    @property
    def next_ordinal(self) -> int:
        return self._next_ordinal

    def __len__(self) -> int:
        return len(self._messages)

    # ── Persistence bookkeeping ────────────────────────────────────────────────

    def pending_writes(self) -> tuple[list[Message], list[Summary]]:
        """Messages and summaries changed since the last :meth:`mark_synced`."""
        messages = [self._messages[o] for o in sorted(self._dirty_messages)]
        summaries = [s for s in self._summaries if s.id in self._dirty_summaries]
        return messages, summaries

    def mark_synced(self, messages: list[Message], summaries: list[Summary]) -> None:
        """
        Clear pending writes that were persisted.

        Only records still identical to what was written are cleared, so a
        change made while the save was in flight stays pending.
        """
        for message in messages:
            if self._messages.get(message.ordinal) == message:
                self._dirty_messages.discard(message.ordinal)
        for summary in summaries:
            self._dirty_summaries.discard(summary.id)

    @property
    def dirty(self) -> bool:
        return bool(self._dirty_messages or self._dirty_summaries)

    def restore(self, messages: list[Message], summaries: list[Summary], next_ordinal: int) -> None:
        """
        Replace the log with persisted state.

        Args:
            messages: Stored messages (any order).
            summaries: Stored summaries (any order).
            next_ordinal: The next ordinal to hand out; at least one past the
                highest stored ordinal so burned ordinals are not reused.
        """
        self._messages = {m.ordinal: m for m in messages}
        self._summaries = sorted(summaries, key=lambda s: s.range_start)
        self._drafts.clear()
        highest = max(self._messages, default=0)
        if self._summaries:
            highest = max(highest, self._summaries[-1].range_end)
        self._next_ordinal = max(next_ordinal, highest + 1)
        self._dirty_messages.clear()
        self._dirty_summaries.clear()
        self._logger.debug(
            "log_restored", messages=len(self._messages), summaries=len(self._summaries)
        )
