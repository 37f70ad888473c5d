"""
llmtui-core: the conversation-context lifecycle manager behind llmtui.

Primary entry point::

    from llmtui import ChatSession, LlmTuiConfig

    async with ChatSession.open(config=LlmTuiConfig.from_toml()) as session:
        result = await session.send("Hello!")
        print(result.text)
"""

from llmtui.compaction.engine import Compactor
from llmtui.context.assembler import AssembledContext, ContextAssembler
from llmtui.context.state import SessionContext
from llmtui.errors import (
    ContextOverflow,
    CorruptStateError,
    InvalidTransitionError,
    LlmTuiError,
    PersistenceError,
    ProviderError,
    SandboxViolation,
    ToolExecutionError,
)
from llmtui.events.bus import EventBus, SessionEvent
from llmtui.models import (
    AutosaveConfig,
    AutosaveMode,
    CompactionConfig,
    CompactionResult,
    FileContextEntry,
    LlmTuiConfig,
    Message,
    ProviderConfig,
    SessionInfo,
    StoreConfig,
    Summary,
    ToolCall,
    ToolCallState,
    ToolConfig,
    ToolDecision,
    ToolResultEntry,
    TurnResult,
)
from llmtui.providers import (
    CompletionProvider,
    ConfirmationPrompt,
    LiteLLMProvider,
    ProviderMessage,
    TextChunk,
    ToolCallRequest,
)
from llmtui.session import ChatSession, DenyAllConfirmation, make_id
from llmtui.store import MessageStore, SessionNotFoundError, SqliteStore, StorePool
from llmtui.tokens.accountant import TokenAccountant
from llmtui.tools import ToolInvocationController, ToolResultCache

__version__ = "0.1.0"

__all__ = [
    # Core
    "ChatSession",
    "DenyAllConfirmation",
    "make_id",
    # Components
    "AssembledContext",
    "Compactor",
    "ContextAssembler",
    "MessageStore",
    "SessionContext",
    "SqliteStore",
    "StorePool",
    "TokenAccountant",
    "ToolInvocationController",
    "ToolResultCache",
    # Config
    "AutosaveConfig",
    "AutosaveMode",
    "CompactionConfig",
    "LlmTuiConfig",
    "ProviderConfig",
    "StoreConfig",
    "ToolConfig",
    # Models
    "CompactionResult",
    "FileContextEntry",
    "Message",
    "SessionInfo",
    "Summary",
    "ToolCall",
    "ToolCallState",
    "ToolDecision",
    "ToolResultEntry",
    "TurnResult",
    # Collaborators
    "CompletionProvider",
    "ConfirmationPrompt",
    "LiteLLMProvider",
    "ProviderMessage",
    "TextChunk",
    "ToolCallRequest",
    # Events
    "EventBus",
    "SessionEvent",
    # Errors
    "ContextOverflow",
    "CorruptStateError",
    "InvalidTransitionError",
    "LlmTuiError",
    "PersistenceError",
    "ProviderError",
    "SandboxViolation",
    "SessionNotFoundError",
    "ToolExecutionError",
]
