"""Tool capabilities, sandboxing, the result cache and the invocation controller."""

from llmtui.tools.cache import ToolResultCache
from llmtui.tools.capabilities import (
    OutputBuffer,
    ToolCapability,
    ToolOutput,
    default_capabilities,
    tool_definitions,
)
from llmtui.tools.controller import ToolInvocationController, render_outcome
from llmtui.tools.sandbox import resolve_in_sandbox

__all__ = [
    "OutputBuffer",
    "ToolCapability",
    "ToolInvocationController",
    "ToolOutput",
    "ToolResultCache",
    "default_capabilities",
    "render_outcome",
    "resolve_in_sandbox",
    "tool_definitions",
]
