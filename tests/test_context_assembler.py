"""Tests for ContextAssembler ordering and the window check."""

from __future__ import annotations

import pytest

from llmtui.context.assembler import ContextAssembler, render_file, render_summary
from llmtui.errors import ContextOverflow
from llmtui.models.message import Summary
from llmtui.models.tool import FileContextEntry
from tests.conftest import fill_log


async def _compact_first(ctx, end: int, text: str = "earlier talk") -> Summary:
    summary = Summary(
        id="sum_1",
        session_id=ctx.session_id,
        range_start=1,
        range_end=end,
        text=text,
        token_count=ctx.accountant.estimate(text),
    )
    async with ctx.lock:
        flagged = ctx.log.commit_summary(summary)
        ctx.accountant.remove(sum(m.token_count for m in flagged))
        ctx.accountant.add(summary.token_count)
    return summary


class TestContextAssembler:
    async def test_order_system_summaries_messages_files(self, ctx):
        await fill_log(ctx, 5)
        summary = await _compact_first(ctx, 2)
        ctx.cache.put(
            ctx.session_id,
            "notes.md",
            FileContextEntry(session_id=ctx.session_id, path="notes.md", content="alpha"),
        )

        built = ContextAssembler(ctx).build("Be brief.", 10_000)

        roles = [m.role for m in built.messages]
        assert roles == ["system", "assistant", "user", "assistant", "user", "user"]
        assert built.messages[0].content == "Be brief."
        assert built.messages[1].content == render_summary(summary)
        assert [m.content[:10] for m in built.messages[2:5]] == [
            "message 03",
            "message 04",
            "message 05",
        ]
        assert built.messages[-1].content == "[FILE: notes.md]\nalpha\n[/FILE]"
        assert built.summary_count == 1
        assert built.file_count == 1

    async def test_summary_block_format(self, ctx):
        await fill_log(ctx, 3)
        summary = await _compact_first(ctx, 2, text="they said hi")
        assert render_summary(summary) == "[SUMMARY of messages 1-2]\nthey said hi\n[/SUMMARY]"

    async def test_estimate_counts_everything(self, ctx):
        await fill_log(ctx, 3)
        entry = FileContextEntry(session_id=ctx.session_id, path="a.txt", content="y" * 80)
        ctx.cache.put(ctx.session_id, "a.txt", entry)
        system = "s" * 40

        built = ContextAssembler(ctx).build(system, 10_000)

        expected = (
            ctx.accountant.estimate(system)
            + ctx.accountant.total
            + ctx.accountant.estimate(render_file(entry))
        )
        assert built.token_estimate == expected
        assert built.fraction_used == pytest.approx(expected / 10_000)

    async def test_drafts_excluded(self, ctx):
        await fill_log(ctx, 2)
        draft = ctx.log.open_draft()
        draft.append("still streaming")
        built = ContextAssembler(ctx).build("", 10_000)
        assert all("still streaming" not in m.content for m in built.messages)
        assert len(built.messages) == 2

    async def test_tool_messages_keep_call_id(self, ctx):
        await ctx.append_message("tool", "result", tool_call_id="call_1")
        built = ContextAssembler(ctx).build("", 10_000)
        assert built.messages[0].tool_call_id == "call_1"

    async def test_overflow_raises(self, ctx):
        """Nothing is dropped to fit; an oversized context is an error."""
        await fill_log(ctx, 10)
        with pytest.raises(ContextOverflow) as info:
            ContextAssembler(ctx).build("system", 20)
        assert info.value.window == 20
        assert info.value.estimated > 20
