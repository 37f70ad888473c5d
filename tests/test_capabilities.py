"""Tests for the built-in tool capabilities and sandbox resolution."""

from __future__ import annotations

import asyncio
import os
import threading
from pathlib import Path

import pytest

from llmtui.errors import SandboxViolation, ToolExecutionError
from llmtui.tools.capabilities import (
    BashCapability,
    EditCapability,
    GlobCapability,
    GrepCapability,
    OutputBuffer,
    ReadCapability,
    WriteCapability,
    default_capabilities,
    tool_definitions,
)
from llmtui.tools.sandbox import relative_key, resolve_in_sandbox


async def _run(capability, sandbox, **args):
    return await capability.execute(args, sandbox_root=sandbox, output=OutputBuffer())


class TestSandbox:
    async def test_relative_inside(self, sandbox):
        assert resolve_in_sandbox(sandbox, "a/b.txt") == sandbox.resolve() / "a" / "b.txt"

    async def test_parent_escape(self, sandbox):
        with pytest.raises(SandboxViolation):
            resolve_in_sandbox(sandbox, "../x")

    async def test_root_itself_allowed(self, sandbox):
        assert resolve_in_sandbox(sandbox, ".") == sandbox.resolve()

    async def test_symlink_out_rejected(self, sandbox, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (sandbox / "link").symlink_to(outside)
        with pytest.raises(SandboxViolation):
            resolve_in_sandbox(sandbox, "link/file.txt")

    async def test_relative_key(self, sandbox):
        assert relative_key(sandbox, sandbox.resolve() / "d" / "f.md") == "d/f.md"


class TestRead:
    async def test_numbered_output(self, sandbox):
        (sandbox / "f.txt").write_text("one\ntwo\nthree\n")
        out = await _run(ReadCapability(), sandbox, file_path="f.txt")
        assert out.text == "     1→one\n     2→two\n     3→three\n"
        assert out.snapshot_path == "f.txt"
        assert out.snapshot_content == "one\ntwo\nthree\n"

    async def test_offset_and_limit(self, sandbox):
        (sandbox / "f.txt").write_text("one\ntwo\nthree\nfour\n")
        out = await _run(ReadCapability(), sandbox, file_path="f.txt", offset=2, limit=2)
        assert out.text == "     2→two\n     3→three\n"
        assert out.snapshot_content == "two\nthree"

    async def test_missing_file(self, sandbox):
        with pytest.raises(ToolExecutionError, match="does not exist"):
            await _run(ReadCapability(), sandbox, file_path="nope.txt")


class TestWriteAndEdit:
    async def test_write_creates_parents(self, sandbox):
        out = await _run(WriteCapability(), sandbox, file_path="a/b/c.txt", content="x")
        assert (sandbox / "a" / "b" / "c.txt").read_text() == "x"
        assert out.text == "File created successfully at: a/b/c.txt"

    async def test_edit_unique(self, sandbox):
        (sandbox / "f.py").write_text("a = 1\nb = 2\n")
        out = await _run(
            EditCapability(), sandbox, file_path="f.py", old_string="b = 2", new_string="b = 3"
        )
        assert (sandbox / "f.py").read_text() == "a = 1\nb = 3\n"
        assert "has been updated" in out.text
        assert "     2→b = 3" in out.text

    async def test_edit_no_match(self, sandbox):
        (sandbox / "f.py").write_text("a = 1\n")
        with pytest.raises(ToolExecutionError, match="not found"):
            await _run(
                EditCapability(), sandbox, file_path="f.py", old_string="zzz", new_string="y"
            )

    async def test_edit_multiple_needs_replace_all(self, sandbox):
        (sandbox / "f.py").write_text("x\nx\n")
        with pytest.raises(ToolExecutionError, match="appears 2 times"):
            await _run(EditCapability(), sandbox, file_path="f.py", old_string="x", new_string="y")
        await _run(
            EditCapability(),
            sandbox,
            file_path="f.py",
            old_string="x",
            new_string="y",
            replace_all=True,
        )
        assert (sandbox / "f.py").read_text() == "y\ny\n"

    async def test_file_io_runs_off_the_event_loop(self, sandbox, monkeypatch):
        """read, write and edit touch the disk from a worker thread."""
        (sandbox / "f.txt").write_text("a\n")
        loop_thread = threading.get_ident()
        threads: list[int] = []
        real_read, real_write = Path.read_text, Path.write_text

        def read_text(self, *args, **kwargs):
            threads.append(threading.get_ident())
            return real_read(self, *args, **kwargs)

        def write_text(self, *args, **kwargs):
            threads.append(threading.get_ident())
            return real_write(self, *args, **kwargs)

        monkeypatch.setattr(Path, "read_text", read_text)
        monkeypatch.setattr(Path, "write_text", write_text)

        await _run(ReadCapability(), sandbox, file_path="f.txt")
        await _run(WriteCapability(), sandbox, file_path="g.txt", content="b\n")
        await _run(EditCapability(), sandbox, file_path="g.txt", old_string="b", new_string="c")

        assert len(threads) == 4
        assert loop_thread not in threads


class TestSearch:
    async def test_glob_skips_hidden_and_build_dirs(self, sandbox):
        (sandbox / "src").mkdir()
        (sandbox / "src" / "a.py").write_text("")
        (sandbox / ".git").mkdir()
        (sandbox / ".git" / "b.py").write_text("")
        (sandbox / "target").mkdir()
        (sandbox / "target" / "c.py").write_text("")
        out = await _run(GlobCapability(), sandbox, pattern="**/*.py")
        assert out.text == "src/a.py"

    async def test_glob_newest_first(self, sandbox):
        (sandbox / "old.txt").write_text("")
        (sandbox / "new.txt").write_text("")
        os.utime(sandbox / "old.txt", (1_000_000, 1_000_000))
        os.utime(sandbox / "new.txt", (2_000_000, 2_000_000))
        out = await _run(GlobCapability(), sandbox, pattern="*.txt")
        assert out.text.splitlines() == ["new.txt", "old.txt"]

    async def test_glob_no_files(self, sandbox):
        out = await _run(GlobCapability(), sandbox, pattern="*.rs")
        assert out.text == "No files found"

    async def test_grep_modes(self, sandbox):
        (sandbox / "a.txt").write_text("hello world\nbye\nhello again\n")
        (sandbox / "b.txt").write_text("nothing here\n")

        files = await _run(GrepCapability(), sandbox, pattern="hello")
        assert files.text == "Found 1 files\na.txt"

        content = await _run(GrepCapability(), sandbox, pattern="hello", output_mode="content")
        assert content.text == "a.txt:1:hello world\na.txt:3:hello again"

        count = await _run(GrepCapability(), sandbox, pattern="hello", output_mode="count")
        assert count.text == "a.txt:2"

    async def test_grep_is_literal(self, sandbox):
        (sandbox / "a.txt").write_text("a.b\naxb\n")
        out = await _run(GrepCapability(), sandbox, pattern="a.b", output_mode="content")
        assert out.text == "a.txt:1:a.b"

    async def test_grep_no_matches(self, sandbox):
        (sandbox / "a.txt").write_text("x\n")
        out = await _run(GrepCapability(), sandbox, pattern="zzz")
        assert out.text == "No matches found"


class TestBash:
    async def test_echo(self, sandbox):
        buffer = OutputBuffer()
        out = await BashCapability().execute(
            {"command": "echo hi"}, sandbox_root=sandbox, output=buffer
        )
        assert out.text == "hi\n"
        assert buffer.text == "hi\n"

    async def test_time_limit_capped_by_default(self):
        bash = BashCapability()
        assert bash.time_limit({"timeout": 3}, 10) == 3
        assert bash.time_limit({"timeout": 30}, 10) == 10
        assert bash.time_limit({}, 10) == 10

    async def test_missing_command(self, sandbox):
        with pytest.raises(ToolExecutionError):
            await _run(BashCapability(), sandbox)

    async def test_missing_output_pipe_kills_process(self, sandbox, monkeypatch):
        real_exec = asyncio.create_subprocess_exec
        spawned = []

        async def without_pipe(*args, **kwargs):
            process = await real_exec(*args, **kwargs)
            process.stdout = None
            spawned.append(process)
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", without_pipe)
        with pytest.raises(ToolExecutionError, match="output pipe"):
            await _run(BashCapability(), sandbox, command="sleep 5")
        assert spawned[0].returncode is not None


class TestDefinitions:
    async def test_default_set(self):
        capabilities = default_capabilities()
        assert list(capabilities) == ["read", "write", "edit", "glob", "grep", "bash"]
        names = [d["function"]["name"] for d in tool_definitions(capabilities)]
        assert names == list(capabilities)
