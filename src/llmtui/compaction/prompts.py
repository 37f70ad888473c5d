"""Summarisation prompt rendering for the compactor.

The prompt is a Jinja2 template rendered over a plain-text transcript of the
messages being compacted. A custom template may replace the built-in one via
``CompactionConfig.summary_prompt``; it must reference ``{{ transcript }}``.
"""

from __future__ import annotations

from collections.abc import Iterable

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, meta

from llmtui.models.message import Message

SUMMARY_PROMPT = """\
You are creating a context summary so this conversation can continue after
older messages are removed. Preserve goals, instructions, constraints, file
paths, tool results, and decisions. The summary replaces the messages below.

Format your response exactly as:

## Goal
(The overall objective of the conversation)

## Key Instructions & Constraints
(Rules or guidelines the user has given)

## Completed Work
(What has been accomplished, including tool results that matter)

## Relevant Files & Directories
(Paths and code locations mentioned)

## Other Important Context
(Anything else needed to continue)

<conversation messages="{{ message_count }}" range="{{ range_start }}-{{ range_end }}">
{{ transcript }}
</conversation>
"""

_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)


def require_variable(template_str: str, name: str) -> None:
    """
    Raise ValueError if the Jinja2 template does not reference variable *name*.

    Uses Jinja2 AST parsing instead of regex, so expressions like
    ``{{ transcript | trim }}`` count. Invalid template syntax is also
    reported as ``ValueError``.
    """
    try:
        ast = _env.parse(template_str)
    except TemplateSyntaxError as exc:
        raise ValueError(f"Invalid Jinja2 template syntax: {exc}") from exc
    if name not in meta.find_undeclared_variables(ast):
        raise ValueError(f"summary_prompt must reference {{{{ {name} }}}}")


def render_transcript(messages: Iterable[Message]) -> str:
    """Render messages as ``[ordinal] role: content`` blocks."""
    return "\n\n".join(f"[{m.ordinal}] {m.role}: {m.content}" for m in messages)


def render_summary_prompt(messages: list[Message], template: str | None = None) -> str:
    """
    Render the summarisation prompt for *messages*.

    Args:
        messages: The contiguous range being compacted, ordered by ordinal.
        template: Custom template source. None = :data:`SUMMARY_PROMPT`.

    Returns:
        The prompt text to send to the provider as a single user message.
    """
    compiled = _env.from_string(template or SUMMARY_PROMPT)
    return compiled.render(
        transcript=render_transcript(messages),
        message_count=len(messages),
        range_start=messages[0].ordinal if messages else 0,
        range_end=messages[-1].ordinal if messages else 0,
    )
