"""llmtui data models."""

from llmtui.models.config import (
    AutosaveConfig,
    AutosaveMode,
    CompactionConfig,
    LlmTuiConfig,
    ProviderConfig,
    StoreConfig,
    ToolConfig,
)
from llmtui.models.message import (
    CompactionResult,
    Message,
    Role,
    Summary,
    TurnResult,
)
from llmtui.models.session import SessionInfo
from llmtui.models.tool import (
    FileContextEntry,
    ToolCall,
    ToolCallState,
    ToolDecision,
    ToolResultEntry,
)

__all__ = [
    # Config
    "AutosaveConfig",
    "AutosaveMode",
    "CompactionConfig",
    "LlmTuiConfig",
    "ProviderConfig",
    "StoreConfig",
    "ToolConfig",
    # Log records
    "Message",
    "Role",
    "Summary",
    "SessionInfo",
    # Tools
    "ToolCall",
    "ToolCallState",
    "ToolDecision",
    "FileContextEntry",
    "ToolResultEntry",
    # Results
    "CompactionResult",
    "TurnResult",
]
