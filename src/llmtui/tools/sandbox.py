"""Path confinement for tool arguments."""

from __future__ import annotations

from pathlib import Path

from llmtui.errors import SandboxViolation


def resolve_in_sandbox(root: str | Path, path_arg: str) -> Path:
    """
    Resolve a tool path argument against the sandbox root.

    Relative paths are taken from *root*; ``~`` is expanded. Symlinks and
    ``..`` components are resolved before the containment check, so a link
    pointing outside the root is rejected too.

    Args:
        root: The sandbox root directory.
        path_arg: The path as supplied by the provider.

    Returns:
        The absolute, resolved path.

    Raises:
        SandboxViolation: If the resolved path is not the root or inside it.
    """
    root_path = Path(root).expanduser().resolve()
    candidate = Path(path_arg).expanduser()
    if not candidate.is_absolute():
        candidate = root_path / candidate
    resolved = candidate.resolve()
    if resolved != root_path and not resolved.is_relative_to(root_path):
        raise SandboxViolation(path_arg, str(root_path))
    return resolved


def relative_key(root: str | Path, resolved: Path) -> str:
    """Return *resolved* as a POSIX path relative to *root* (``.`` for the root itself)."""
    return resolved.relative_to(Path(root).expanduser().resolve()).as_posix()
