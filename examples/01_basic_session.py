"""
Example 01: Basic Session
=========================

Demonstrates the simplest end-to-end usage of ChatSession:
- Opening a session as an async context manager
- Streaming replies through an ``on_chunk`` callback
- Watching auto-compaction via TurnResult.compaction_triggered
- Inspecting token usage and summaries

Run with a canned provider (no API key needed):
    uv run python examples/01_basic_session.py

Run against a local Ollama model:
    LLMTUI_REAL_LLM=1 uv run python examples/01_basic_session.py
"""

import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

_CANNED_RESPONSES = [
    "The GIL is a mutex that lets only one thread execute Python bytecode at a time.",
    "asyncio runs coroutines on a single-threaded event loop that switches at await points.",
    "async/await is cooperative and explicit; threads are preemptive and share the GIL.",
    "Use asyncio for many concurrent I/O waits and multiprocessing for CPU-bound work.",
    "asyncio.run(main()) starts the loop; await asyncio.gather(a(), b()) runs both.",
]


class CannedProvider:
    """Streams canned answers word by word; also answers summary requests."""

    def __init__(self) -> None:
        self._turn = 0

    async def send(self, context, *, tools=None):
        from llmtui import TextChunk

        if "<conversation" in context[-1].content:
            text = "The user asked about Python concurrency; the GIL and asyncio were explained."
        else:
            text = _CANNED_RESPONSES[self._turn % len(_CANNED_RESPONSES)]
            self._turn += 1
        for word in text.split(" "):
            await asyncio.sleep(0.01)
            yield TextChunk(text=word + " ")


async def main() -> None:
    from llmtui import ChatSession, CompactionConfig, LlmTuiConfig, ProviderConfig

    print("=== llmtui Basic Session Example ===\n")

    # A small window so compaction kicks in within a few turns
    config = LlmTuiConfig(
        providers={"demo": ProviderConfig(model="ollama/llama2", context_window=300)},
        default_provider="demo",
        compaction=CompactionConfig(threshold=0.5, keep_recent=4),
    )
    provider = None if os.environ.get("LLMTUI_REAL_LLM") == "1" else CannedProvider()

    async with ChatSession.open(
        name="concurrency",
        config=config,
        provider=provider,
        db_path="/tmp/llmtui_example_01.db",
    ) as session:
        print(f"Session created: {session.id}\n")

        questions = [
            "What is Python's GIL?",
            "How does asyncio work at a high level?",
            "What's the difference between async/await and threading?",
            "When should I use asyncio vs multiprocessing?",
            "Can you show a simple asyncio example?",
        ]

        for i, question in enumerate(questions, 1):
            print(f"Turn {i}: {question}\n  ", end="")
            result = await session.send(
                question, on_chunk=lambda text: print(text, end="", flush=True)
            )
            print(f"\n  tokens in context: {result.total_tokens} / {session.context_window}")
            if result.compaction_triggered:
                print("  *** Compaction triggered in background! ***")
                await session.compactor.wait_for_pending()
            print()

        for summary in session.summaries():
            print(f"Summary of messages {summary.range_start}-{summary.range_end}:")
            print(f"  {summary.text}")
        print(f"Messages in log: {len(session.messages())}")

    print("\nSession closed cleanly.")


if __name__ == "__main__":
    asyncio.run(main())
