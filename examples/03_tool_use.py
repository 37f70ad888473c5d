"""
Example 03: Tool Use
====================

Demonstrates confirmed tool calls and file snapshots:
- A provider requesting ``read`` and ``bash`` calls mid-stream
- A confirmation prompt that approves reads and denies shell commands
- Tool call state changes published on the event bus
- File snapshots surviving a reload as ``[FILE: ...]`` context blocks

The provider is scripted so the example runs without an API key.

Run:
    uv run python examples/03_tool_use.py
"""

import asyncio
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class ScriptedToolProvider:
    """First asks for two tools, then answers using their results."""

    async def send(self, context, *, tools=None):
        from llmtui import TextChunk, ToolCallRequest

        if any(m.role == "tool" for m in context):
            yield TextChunk(text="The TODO list has two items: tests and docs.")
            return
        yield TextChunk(text="Let me look at the file. ")
        yield ToolCallRequest(id="call_read", name="read", arguments={"file_path": "TODO.md"})
        yield ToolCallRequest(id="call_bash", name="bash", arguments={"command": "rm -rf build"})


class ReadOnlyConfirmation:
    """Approves read-only tools, denies everything else."""

    async def ask(self, call):
        from llmtui import ToolDecision

        approved = call.name in ("read", "glob", "grep")
        print(f"  confirm {call.name} {call.args} -> {'yes' if approved else 'no'}")
        return ToolDecision.APPROVED if approved else ToolDecision.DENIED


async def main() -> None:
    from llmtui import ChatSession, LlmTuiConfig, SessionEvent, ToolConfig

    workspace = Path(tempfile.mkdtemp(prefix="llmtui_example_03_"))
    (workspace / "TODO.md").write_text("- write tests\n- write docs\n")
    config = LlmTuiConfig(tools=ToolConfig(sandbox_root=str(workspace)))
    db_path = str(workspace / "sessions.db")

    session = await ChatSession.create(
        config=config,
        db_path=db_path,
        provider=ScriptedToolProvider(),
        confirmation=ReadOnlyConfirmation(),
    )
    session.subscribe(
        SessionEvent.TOOL_CALL_STATE_CHANGED,
        lambda event, payload: print(f"    {payload['tool_call_id']}: {payload['state']}"),
    )

    print("User: What's left on my TODO list?")
    result = await session.send("What's left on my TODO list?")
    print(f"\nAssistant: {result.text}")
    print(f"Tool rounds: {result.tool_rounds}, calls: {result.tool_call_ids}\n")

    for message in session.messages():
        label = f"{message.role}[{message.tool_call_id}]" if message.tool_call_id else message.role
        print(f"  #{message.ordinal} {label}: {message.content.strip()[:70]!r}")
    await session.close()

    # The file snapshot is restored on load; no provider call is needed
    reloaded = await ChatSession.load(
        session.id, config=config, db_path=db_path, provider=ScriptedToolProvider()
    )
    context = reloaded.context_for_next_turn()
    print(f"\nReloaded context: {len(context.messages)} messages, ~{context.token_estimate} tokens")
    print(context.messages[-1].content)
    await reloaded.close()


if __name__ == "__main__":
    asyncio.run(main())
