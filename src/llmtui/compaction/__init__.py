"""Compaction: summarising old messages to keep the context within budget."""

from llmtui.compaction.engine import Compactor
from llmtui.compaction.prompts import SUMMARY_PROMPT, render_summary_prompt, require_variable

__all__ = [
    "SUMMARY_PROMPT",
    "Compactor",
    "render_summary_prompt",
    "require_variable",
]
