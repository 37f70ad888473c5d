"""Session metadata record."""

from __future__ import annotations

from pydantic import BaseModel, Field

from llmtui.models.message import now_ms


class SessionInfo(BaseModel):
    """A stored chat session's metadata row."""

    id: str
    name: str | None = None
    project: str | None = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    provider: str = "ollama"
    model: str = ""

    @property
    def display_name(self) -> str:
        """The session name, or its id when unnamed."""
        return self.name or self.id
