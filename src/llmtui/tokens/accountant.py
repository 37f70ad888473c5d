"""Per-session token estimation and running totals."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from llmtui.errors import CorruptStateError

if TYPE_CHECKING:
    from llmtui.store.log import MessageStore


class TokenAccountant:
    """
    Token estimation plus the running total for one session.

    The total always equals the sum of ``token_count`` over the session's
    uncompacted finalized messages plus all of its summaries. Mutators of the
    message log call :meth:`add` / :meth:`remove` as they go; :meth:`verify`
    checks the running value against a fresh :meth:`recompute`.

    Estimation:
    1. tiktoken when ``encoding`` is ``cl100k_base`` / ``o200k_base`` and the
       package is installed.
    2. Character heuristic (``len // 4``, minimum 1) otherwise.

    Both are deterministic for a given input.
    """

    def __init__(self, log: MessageStore, encoding: str = "heuristic") -> None:
        self._log = log
        self._encoding = encoding
        self._encoder: Any = None
        self._total = 0
        self._force_heuristic: bool = False
        """Set to True in tests to skip tiktoken import."""
        self._logger = structlog.get_logger("llmtui.tokens").bind(session_id=log.session_id)

    # ── Estimation ─────────────────────────────────────────────────────────────

    def estimate(self, text: str) -> int:
        """
        Estimate the token cost of *text*.

        Returns:
            0 for empty text, otherwise at least 1.
        """
        if not text:
            return 0
        if not self._force_heuristic and self._encoding in ("cl100k_base", "o200k_base"):
            try:
                return self._tiktoken_estimate(text)
            except ImportError:
                self._logger.warning("tiktoken_unavailable", encoding=self._encoding)
                self._force_heuristic = True
        return max(1, len(text) // 4)

    def _tiktoken_estimate(self, text: str) -> int:
        if self._encoder is None:
            import tiktoken

            self._encoder = tiktoken.get_encoding(self._encoding)
        return len(self._encoder.encode(text))

    # ── Running total ──────────────────────────────────────────────────────────

    @property
    def total(self) -> int:
        """Current running total for the session."""
        return self._total

    def add(self, n: int) -> None:
        if n < 0:
            raise ValueError(f"Cannot add a negative token count: {n}")
        self._total += n

    def remove(self, n: int) -> None:
        if n < 0:
            raise ValueError(f"Cannot remove a negative token count: {n}")
        self._total -= n

    def recompute(self) -> int:
        """Recompute the total from the message log, replace the running value, and return it."""
        self._total = self._expected()
        return self._total

    def verify(self) -> None:
        """
        Check the running total against the message log.

        Raises:
            CorruptStateError: If they disagree.
        """
        expected = self._expected()
        if expected != self._total:
            self._logger.error("token_total_diverged", tracked=self._total, expected=expected)
            raise CorruptStateError(expected=expected, actual=self._total)

    def percentage_of(self, context_window: int) -> float:
        """Return ``total / context_window`` as a fraction (0.0 for a non-positive window)."""
        if context_window <= 0:
            return 0.0
        return self._total / context_window

    def _expected(self) -> int:
        return sum(m.token_count for m in self._log.uncompacted()) + sum(
            s.token_count for s in self._log.summaries()
        )
