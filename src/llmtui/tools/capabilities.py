"""Built-in tool capabilities: read, write, edit, glob, grep, bash.

Each capability is a thin operation invoked by
:class:`~llmtui.tools.controller.ToolInvocationController` once a call is
approved. The controller has already confined every argument named in
``path_arguments`` to the sandbox before ``execute`` runs; capabilities
resolve paths again through the same helper so they never act on an
unresolved string.

Capabilities report failure by raising :class:`~llmtui.errors.ToolExecutionError`.
"""

from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import structlog

from llmtui.errors import ToolExecutionError
from llmtui.tools.sandbox import relative_key, resolve_in_sandbox

_logger = structlog.get_logger("llmtui.tools.capabilities")

_SKIPPED_DIRS = frozenset({"target", "node_modules", "__pycache__"})


@dataclass
class OutputBuffer:
    """Output captured while a capability runs; survives cancellation."""

    chunks: list[str] = field(default_factory=list)

    def write(self, text: str) -> None:
        self.chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


@dataclass
class ToolOutput:
    """A capability's successful result."""

    text: str
    snapshot_path: str | None = None
    """Sandbox-relative path of the file whose content was read, for read-like tools."""
    snapshot_content: str | None = None


class ToolCapability(Protocol):
    """Interface every tool capability implements."""

    name: str
    path_arguments: tuple[str, ...]
    read_like: bool

    @property
    def definition(self) -> dict[str, Any]:
        """Function definition (JSON schema) advertised to the provider."""
        ...

    def time_limit(self, args: dict[str, Any], default: float) -> float: ...

    async def execute(
        self, args: dict[str, Any], *, sandbox_root: Path, output: OutputBuffer
    ) -> ToolOutput: ...


def _function(
    name: str, description: str, properties: dict[str, Any], required: list[str]
) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


def _number_lines(lines: list[str], first: int) -> str:
    return "".join(f"{n:6}→{line}\n" for n, line in enumerate(lines, start=first))


def _require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise ToolExecutionError(f"Missing required string argument: {key!r}")
    return value


def _hidden_or_build(rel: Path) -> bool:
    return any(part.startswith(".") or part in _SKIPPED_DIRS for part in rel.parts)


async def _read_file(path: Path, shown: str) -> str:
    try:
        return await asyncio.to_thread(path.read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ToolExecutionError(f"Cannot read {shown}: {exc}") from exc


async def _write_file(path: Path, content: str, shown: str) -> None:
    def write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    try:
        await asyncio.to_thread(write)
    except OSError as exc:
        raise ToolExecutionError(f"Cannot write {shown}: {exc}") from exc


class _Capability:
    name: str = ""
    path_arguments: tuple[str, ...] = ()
    read_like: bool = False

    def time_limit(self, args: dict[str, Any], default: float) -> float:
        return default


# ── File capabilities ──────────────────────────────────────────────────────────


class ReadCapability(_Capability):
    """Read a text file, returning ``cat -n`` style numbered lines."""

    name = "read"
    path_arguments = ("file_path",)
    read_like = True

    @property
    def definition(self) -> dict[str, Any]:
        return _function(
            self.name,
            "Read a file from the workspace. Output is numbered like `cat -n`.",
            {
                "file_path": {"type": "string", "description": "Path to the file"},
                "offset": {"type": "integer", "description": "1-based line to start from"},
                "limit": {"type": "integer", "description": "Maximum number of lines"},
            },
            ["file_path"],
        )

    async def execute(
        self, args: dict[str, Any], *, sandbox_root: Path, output: OutputBuffer
    ) -> ToolOutput:
        path = resolve_in_sandbox(sandbox_root, _require_str(args, "file_path"))
        if not path.exists():
            raise ToolExecutionError(f"File does not exist: {args['file_path']}")
        if not path.is_file():
            raise ToolExecutionError(f"Path is not a file: {args['file_path']}")
        content = await _read_file(path, args["file_path"])

        lines = content.splitlines()
        start = max(int(args.get("offset") or 1), 1) - 1
        limit = args.get("limit")
        end = len(lines) if limit is None else min(start + int(limit), len(lines))
        selected = lines[start:end]
        if start == 0 and end == len(lines):
            snapshot = content
        else:
            snapshot = "\n".join(selected)
        return ToolOutput(
            text=_number_lines(selected, start + 1),
            snapshot_path=relative_key(sandbox_root, path),
            snapshot_content=snapshot,
        )


class WriteCapability(_Capability):
    """Create or overwrite a file, creating parent directories."""

    name = "write"
    path_arguments = ("file_path",)

    @property
    def definition(self) -> dict[str, Any]:
        return _function(
            self.name,
            "Write content to a file, replacing it if it exists.",
            {
                "file_path": {"type": "string", "description": "Path to the file"},
                "content": {"type": "string", "description": "Full file content"},
            },
            ["file_path", "content"],
        )

    async def execute(
        self, args: dict[str, Any], *, sandbox_root: Path, output: OutputBuffer
    ) -> ToolOutput:
        path = resolve_in_sandbox(sandbox_root, _require_str(args, "file_path"))
        content = args.get("content")
        if not isinstance(content, str):
            raise ToolExecutionError("Missing required string argument: 'content'")
        await _write_file(path, content, args["file_path"])
        return ToolOutput(text=f"File created successfully at: {args['file_path']}")


class EditCapability(_Capability):
    """Replace a unique substring of a file (or every occurrence with ``replace_all``)."""

    name = "edit"
    path_arguments = ("file_path",)

    @property
    def definition(self) -> dict[str, Any]:
        return _function(
            self.name,
            "Replace text in a file. old_string must be unique unless replace_all is true.",
            {
                "file_path": {"type": "string", "description": "Path to the file"},
                "old_string": {"type": "string", "description": "Exact text to replace"},
                "new_string": {"type": "string", "description": "Replacement text"},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
            },
            ["file_path", "old_string", "new_string"],
        )

    async def execute(
        self, args: dict[str, Any], *, sandbox_root: Path, output: OutputBuffer
    ) -> ToolOutput:
        file_arg = _require_str(args, "file_path")
        path = resolve_in_sandbox(sandbox_root, file_arg)
        old = _require_str(args, "old_string")
        new = args.get("new_string")
        if not isinstance(new, str):
            raise ToolExecutionError("Missing required string argument: 'new_string'")
        replace_all = args.get("replace_all") in (True, "true", "True")

        if not path.is_file():
            raise ToolExecutionError(f"File does not exist: {file_arg}")
        content = await _read_file(path, file_arg)

        count = content.count(old)
        if count == 0:
            raise ToolExecutionError(f"old_string not found in file: {old!r}")
        if count > 1 and not replace_all:
            raise ToolExecutionError(
                f"old_string appears {count} times in file. Use replace_all=true to replace "
                "all occurrences, or provide a more specific old_string."
            )
        updated = content.replace(old, new) if replace_all else content.replace(old, new, 1)
        await _write_file(path, updated, file_arg)

        lines = updated.splitlines()
        first_line = new.splitlines()[0] if new else ""
        for index, line in enumerate(lines):
            if first_line and first_line in line:
                start = max(index - 3, 0)
                snippet = _number_lines(lines[start : index + 4], start + 1)
                return ToolOutput(
                    text=f"The file {file_arg} has been updated. Here's the result of running "
                    f"`cat -n` on a snippet of the edited file:\n{snippet}"
                )
        return ToolOutput(text=f"File {file_arg} has been updated")


# ── Search capabilities ────────────────────────────────────────────────────────


class GlobCapability(_Capability):
    """List files matching a glob pattern, newest first."""

    name = "glob"
    path_arguments = ("path",)

    @property
    def definition(self) -> dict[str, Any]:
        return _function(
            self.name,
            "Find files by glob pattern (e.g. '**/*.py'). Hidden and build directories are skipped.",
            {
                "pattern": {"type": "string", "description": "Glob pattern"},
                "path": {"type": "string", "description": "Directory to search (default: root)"},
            },
            ["pattern"],
        )

    async def execute(
        self, args: dict[str, Any], *, sandbox_root: Path, output: OutputBuffer
    ) -> ToolOutput:
        pattern = _require_str(args, "pattern")
        base = resolve_in_sandbox(sandbox_root, args.get("path") or ".")
        if not base.is_dir():
            raise ToolExecutionError(f"Not a directory: {args.get('path')}")
        paths = await asyncio.to_thread(self._find, base, sandbox_root, pattern)
        return ToolOutput(text="\n".join(paths) if paths else "No files found")

    @staticmethod
    def _find(base: Path, root: Path, pattern: str) -> list[str]:
        found: list[tuple[float, str]] = []
        for match in base.glob(pattern):
            try:
                rel = match.resolve().relative_to(root)
            except ValueError:
                continue
            if _hidden_or_build(rel) or not match.is_file():
                continue
            found.append((match.stat().st_mtime, rel.as_posix()))
        found.sort(key=lambda item: (-item[0], item[1]))
        return [path for _, path in found]


class GrepCapability(_Capability):
    """Search file contents for a literal substring."""

    name = "grep"
    path_arguments = ("path",)

    _MODES = ("files_with_matches", "content", "count")

    @property
    def definition(self) -> dict[str, Any]:
        return _function(
            self.name,
            "Search file contents for a literal string.",
            {
                "pattern": {"type": "string", "description": "Text to search for"},
                "path": {"type": "string", "description": "Directory to search (default: root)"},
                "glob": {"type": "string", "description": "Glob filter (default: '**/*')"},
                "output_mode": {"type": "string", "enum": list(self._MODES)},
            },
            ["pattern"],
        )

    async def execute(
        self, args: dict[str, Any], *, sandbox_root: Path, output: OutputBuffer
    ) -> ToolOutput:
        needle = _require_str(args, "pattern")
        mode = args.get("output_mode") or "files_with_matches"
        if mode not in self._MODES:
            raise ToolExecutionError(f"Unknown output_mode: {mode!r}")
        base = resolve_in_sandbox(sandbox_root, args.get("path") or ".")
        results = await asyncio.to_thread(
            self._search, base, sandbox_root, needle, args.get("glob") or "**/*", mode
        )
        if not results:
            return ToolOutput(text="No matches found")
        if mode == "files_with_matches":
            return ToolOutput(text=f"Found {len(results)} files\n" + "\n".join(results))
        return ToolOutput(text="\n".join(results))

    @staticmethod
    def _search(base: Path, root: Path, needle: str, pattern: str, mode: str) -> list[str]:
        results: list[str] = []
        for match in sorted(base.glob(pattern)):
            try:
                rel = match.resolve().relative_to(root)
            except ValueError:
                continue
            if _hidden_or_build(rel) or not match.is_file():
                continue
            try:
                lines = match.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            hits = [(n, line) for n, line in enumerate(lines, start=1) if needle in line]
            if not hits:
                continue
            if mode == "files_with_matches":
                results.append(rel.as_posix())
            elif mode == "content":
                results.extend(f"{rel.as_posix()}:{n}:{line}" for n, line in hits)
            else:
                results.append(f"{rel.as_posix()}:{len(hits)}")
        return results


# ── Shell capability ───────────────────────────────────────────────────────────


class BashCapability(_Capability):
    """
    Run a command with ``/bin/bash -c`` in the sandbox root.

    The command runs in its own process group. When the surrounding task is
    cancelled (timeout or user cancel) the whole group is killed and reaped
    before the cancellation propagates, and everything read so far remains in
    the :class:`OutputBuffer`.
    """

    name = "bash"
    path_arguments = ()

    @property
    def definition(self) -> dict[str, Any]:
        return _function(
            self.name,
            "Execute a bash command in the workspace root. Returns combined stdout and stderr.",
            {
                "command": {"type": "string", "description": "Command to run"},
                "timeout": {"type": "number", "description": "Timeout in seconds"},
            },
            ["command"],
        )

    def time_limit(self, args: dict[str, Any], default: float) -> float:
        requested = args.get("timeout")
        if isinstance(requested, int | float) and requested > 0:
            return min(float(requested), default)
        return default

    async def execute(
        self, args: dict[str, Any], *, sandbox_root: Path, output: OutputBuffer
    ) -> ToolOutput:
        command = _require_str(args, "command")
        process = await asyncio.create_subprocess_exec(
            "/bin/bash",
            "-c",
            command,
            cwd=str(sandbox_root),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        stdout = process.stdout
        if stdout is None:
            await _kill_group(process)
            raise ToolExecutionError("bash started without an output pipe")
        try:
            while True:
                chunk = await stdout.read(4096)
                if not chunk:
                    break
                output.write(chunk.decode("utf-8", errors="replace"))
            returncode = await process.wait()
        except asyncio.CancelledError:
            await _kill_group(process)
            raise

        if returncode != 0:
            raise ToolExecutionError(
                f"Command exited with code {returncode}", partial_output=output.text
            )
        return ToolOutput(text=output.text or "(no output)")


async def _kill_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    await process.wait()
    _logger.debug("process_group_killed", pid=process.pid)


def default_capabilities() -> dict[str, ToolCapability]:
    """The built-in capability set, keyed by tool name."""
    capabilities: list[ToolCapability] = [
        ReadCapability(),
        WriteCapability(),
        EditCapability(),
        GlobCapability(),
        GrepCapability(),
        BashCapability(),
    ]
    return {c.name: c for c in capabilities}


def tool_definitions(capabilities: dict[str, ToolCapability]) -> list[dict[str, Any]]:
    """Function definitions for every capability, in registration order."""
    return [c.definition for c in capabilities.values()]
