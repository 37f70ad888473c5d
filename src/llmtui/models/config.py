"""Configuration models for llmtui sessions and components."""

from __future__ import annotations

import os
import tomllib
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class AutosaveMode(StrEnum):
    """When session state is written to the store."""

    DISABLED = "disabled"
    ONSEND = "onsend"
    TIMER = "timer"


class AutosaveConfig(BaseModel):
    """Configuration for automatic persistence."""

    mode: AutosaveMode = AutosaveMode.ONSEND

    interval_seconds: int = Field(
        default=30,
        ge=1,
        description="Seconds between saves when ``mode`` is ``timer``.",
    )


class CompactionConfig(BaseModel):
    """Configuration for the compactor."""

    auto: bool = True
    """Whether to trigger compaction automatically when the threshold is crossed."""

    threshold: float = Field(
        default=0.75,
        gt=0.0,
        le=1.0,
        description="Fraction of the context window at which auto-compaction starts.",
    )

    keep_recent: int = Field(
        default=10,
        ge=0,
        description="Number of newest messages that are never compacted.",
    )

    summary_timeout_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Wall-clock limit for the provider's summary response.",
    )

    summary_prompt: str | None = Field(
        default=None,
        description="Custom Jinja2 summarisation prompt. Must reference ``{{ transcript }}``. "
        "None = use the built-in prompt.",
    )

    @field_validator("summary_prompt")
    @classmethod
    def validate_summary_prompt(cls, value: str | None) -> str | None:
        if value is None:
            return value
        from llmtui.compaction.prompts import require_variable

        require_variable(value, "transcript")
        return value


class ToolConfig(BaseModel):
    """Configuration for tool invocation."""

    sandbox_root: str = Field(
        default_factory=os.getcwd,
        description="Directory outside of which tool path arguments are rejected. "
        "~ is expanded and the path resolved at validation time.",
    )

    timeout_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Wall-clock limit for a single tool execution.",
    )

    max_tool_rounds: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum provider round trips per user turn while tools are requested.",
    )

    @field_validator("sandbox_root")
    @classmethod
    def resolve_sandbox_root(cls, value: str) -> str:
        return str(Path(value).expanduser().resolve())


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.local/share/llmtui/sessions.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class ProviderConfig(BaseModel):
    """A completion provider the user can select."""

    model: str = ""
    """Provider-specific model string (litellm format when using ``LiteLLMProvider``)."""

    context_window: int = Field(default=4_096, gt=0)
    """Maximum tokens the provider accepts for a single request."""


def _default_providers() -> dict[str, ProviderConfig]:
    return {
        "ollama": ProviderConfig(model="ollama/llama2", context_window=4_096),
        "claude": ProviderConfig(model="anthropic/claude-3-5-sonnet-20241022", context_window=200_000),
        "bedrock": ProviderConfig(
            model="bedrock/anthropic.claude-3-5-sonnet-20241022-v2:0", context_window=200_000
        ),
    }


# Flat keys accepted at the top level of config.toml, mapped to (section, field).
_FLAT_KEYS: dict[str, tuple[str, str]] = {
    "autosave_mode": ("autosave", "mode"),
    "autosave_interval_seconds": ("autosave", "interval_seconds"),
    "autocompact_threshold": ("compaction", "threshold"),
    "autocompact_keep_recent": ("compaction", "keep_recent"),
}


class LlmTuiConfig(BaseModel):
    """
    Top-level configuration.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = LlmTuiConfig(
            compaction=CompactionConfig(threshold=0.6, keep_recent=6),
            tools=ToolConfig(sandbox_root="~/projects/demo", timeout_seconds=30),
        )
    """

    autosave: AutosaveConfig = Field(default_factory=AutosaveConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    tools: ToolConfig = Field(default_factory=ToolConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=_default_providers)

    default_provider: str = "ollama"

    token_encoding: Literal["heuristic", "cl100k_base", "o200k_base"] = "heuristic"
    """Tokeniser used by the accountant. ``heuristic`` is ``len // 4``."""

    system_prompt: str = "You are a helpful assistant."

    @model_validator(mode="after")
    def validate_default_provider(self) -> LlmTuiConfig:
        if self.default_provider not in self.providers:
            raise ValueError(
                f"default_provider {self.default_provider!r} is not one of "
                f"{sorted(self.providers)}"
            )
        return self

    def provider(self, name: str | None = None) -> ProviderConfig:
        """Return the provider config for *name* (default provider when None)."""
        key = name or self.default_provider
        try:
            return self.providers[key]
        except KeyError:
            raise ValueError(f"Unknown provider: {key!r}") from None

    def context_window_for(self, name: str | None = None) -> int:
        """Return the context window of provider *name*."""
        return self.provider(name).context_window

    @classmethod
    def default(cls) -> LlmTuiConfig:
        """Return a config instance with all defaults."""
        return cls()

    @classmethod
    def default_path(cls) -> Path:
        """``$XDG_CONFIG_HOME/llmtui/config.toml`` (``~/.config`` when unset)."""
        base = os.environ.get("XDG_CONFIG_HOME") or "~/.config"
        return Path(base).expanduser() / "llmtui" / "config.toml"

    @classmethod
    def from_toml(cls, path: str | Path | None = None) -> LlmTuiConfig:
        """
        Load configuration from a TOML file.

        A missing file yields the defaults. Both the sectioned layout
        (``[compaction] threshold = 0.6``) and the flat legacy keys
        (``autocompact_threshold = 0.6``, ``claude_context_window = 100000``)
        are accepted; sectioned values win when both are present.

        Args:
            path: Config file location. Defaults to :meth:`default_path`.

        Returns:
            A validated LlmTuiConfig.

        Raises:
            tomllib.TOMLDecodeError: If the file is not valid TOML.
            pydantic.ValidationError: If a value is out of range.
        """
        cfg_path = Path(path).expanduser() if path is not None else cls.default_path()
        if not cfg_path.exists():
            return cls()
        with cfg_path.open("rb") as fh:
            raw = tomllib.load(fh)
        return cls.model_validate(_normalise_flat_keys(raw))


def _with_route(provider: str, model: Any) -> Any:
    """Prefix a bare legacy model name (``llama2``) with its provider's litellm route."""
    if not isinstance(model, str) or "/" in model:
        return model
    default = _default_providers().get(provider)
    route = default.model.split("/", 1)[0] if default is not None else provider
    return f"{route}/{model}"


def _normalise_flat_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Fold flat legacy keys into the sectioned layout."""
    data: dict[str, Any] = {}
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, dict):
            data[key] = dict(value)
        else:
            flat[key] = value

    explicit: dict[str, dict[str, Any]] = {
        name: dict(overrides) for name, overrides in data.get("providers", {}).items()
    }

    for key, value in flat.items():
        if key in _FLAT_KEYS:
            section, field = _FLAT_KEYS[key]
            data.setdefault(section, {}).setdefault(field, value)
        elif key == "default_llm_provider":
            data.setdefault("default_provider", value)
        elif key.endswith("_context_window"):
            explicit.setdefault(key.removesuffix("_context_window"), {}).setdefault(
                "context_window", value
            )
        elif key.endswith("_model"):
            name = key.removesuffix("_model")
            explicit.setdefault(name, {}).setdefault("model", _with_route(name, value))
        else:
            data.setdefault(key, value)

    providers: dict[str, dict[str, Any]] = {
        name: cfg.model_dump() for name, cfg in _default_providers().items()
    }
    for name, overrides in explicit.items():
        providers.setdefault(name, {}).update(overrides)

    # Autosave mode strings in the legacy file are capitalised ("OnSend").
    autosave = data.get("autosave")
    if autosave and isinstance(autosave.get("mode"), str):
        autosave["mode"] = autosave["mode"].lower()

    data["providers"] = providers
    return data
