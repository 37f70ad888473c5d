"""llmtui event bus."""

from llmtui.events.bus import EventBus, Handler, SessionEvent
from llmtui.events.payloads import (
    CompactionCompletedPayload,
    CompactionFailedPayload,
    CompactionTriggeredPayload,
    MessageAppendedPayload,
    PersistenceFailedPayload,
    PersistenceSavedPayload,
    SessionClosedPayload,
    SessionCreatedPayload,
    SessionUpdatedPayload,
    StateRepairedPayload,
    ToolCallStateChangedPayload,
)

__all__ = [
    "CompactionCompletedPayload",
    "CompactionFailedPayload",
    "CompactionTriggeredPayload",
    "EventBus",
    "Handler",
    "MessageAppendedPayload",
    "PersistenceFailedPayload",
    "PersistenceSavedPayload",
    "SessionClosedPayload",
    "SessionCreatedPayload",
    "SessionEvent",
    "SessionUpdatedPayload",
    "StateRepairedPayload",
    "ToolCallStateChangedPayload",
]
