"""Conversation log and persistence layer."""

from llmtui.store.log import Draft, LogIntegrityError, MessageStore
from llmtui.store.pool import StorePool
from llmtui.store.sqlite import (
    DuplicateIDError,
    SessionNotFoundError,
    SqliteStore,
    StoredSession,
    StoreError,
    WriteBatch,
)

__all__ = [
    "Draft",
    "DuplicateIDError",
    "LogIntegrityError",
    "MessageStore",
    "SessionNotFoundError",
    "SqliteStore",
    "StoreError",
    "StorePool",
    "StoredSession",
    "WriteBatch",
]
