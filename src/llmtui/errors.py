"""Exception hierarchy shared across llmtui components."""

from __future__ import annotations


class LlmTuiError(Exception):
    """Base class for all llmtui errors."""


class ProviderError(LlmTuiError):
    """Raised when the completion provider fails, times out, or returns nothing usable."""


class SandboxViolation(LlmTuiError):
    """Raised when a tool path argument resolves outside the sandbox root."""

    def __init__(self, path: str, root: str) -> None:
        super().__init__(f"Path {path!r} is outside the sandbox root {root!r}")
        self.path = path
        self.root = root


class ToolExecutionError(LlmTuiError):
    """Raised by a tool capability when the operation itself fails."""

    def __init__(self, message: str, partial_output: str = "") -> None:
        super().__init__(message)
        self.partial_output = partial_output


class PersistenceError(LlmTuiError):
    """Raised when a save transaction cannot be committed."""


class CorruptStateError(LlmTuiError):
    """Raised when a derived value (e.g. the token total) disagrees with its source."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Token total diverged: tracked {actual}, recomputed {expected}")
        self.expected = expected
        self.actual = actual


class ContextOverflow(LlmTuiError):
    """Raised when the assembled context does not fit the provider's window."""

    def __init__(self, estimated: int, window: int) -> None:
        super().__init__(f"Assembled context is {estimated} tokens; window is {window}")
        self.estimated = estimated
        self.window = window


class InvalidTransitionError(LlmTuiError):
    """Raised when a tool call is moved along an edge its state machine does not allow."""

    def __init__(self, call_id: str, current: str, target: str) -> None:
        super().__init__(f"Tool call {call_id!r} cannot move from {current!r} to {target!r}")
        self.call_id = call_id
        self.current = current
        self.target = target
