"""Settings via pydantic-settings with TERN_ env prefix.

Credentials use validation_alias to read the unprefixed ANTHROPIC_* env
vars, so an existing shell setup works without extra configuration.
The settings object is frozen: a session changes configuration by
deriving a new validated snapshot with with_overrides().
"""

import os
from pathlib import Path
from typing import Any, get_args, get_origin

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tern.errors import ConfigError

# Keys never echoed back by /config
_SECRET_KEYS = frozenset({"anthropic_api_key", "anthropic_auth_token"})

DEFAULT_SYSTEM_PROMPT = (
    "You are tern, a careful assistant working inside the user's shell. "
    "Use the available tools to inspect and change files in the working "
    "directory and to run commands. Keep answers short and concrete."
)


def _default_config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "tern"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TERN_",
        env_file=".env",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Upstream API
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: float = 10.0  # seconds

    # LLM request
    model: str = "claude-sonnet-4-5"
    max_tokens: int = Field(4096, gt=0)  # response budget per request
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float | None = Field(None, ge=0.0, le=1.0)
    top_p: float | None = Field(None, ge=0.0, le=1.0)
    top_k: int | None = Field(None, gt=0)
    stop_sequences: list[str] = Field(default_factory=list)
    tool_choice: str = "auto"  # auto | any | <tool name>

    # Context budget
    context_max_tokens: int = Field(200_000, gt=0)
    chars_per_token: int = Field(4, gt=0)
    warning_ratio: float = 0.60
    error_ratio: float = 0.80
    compression_ratio: float = 0.92
    min_retain: int = 5
    retain_threshold: float = 0.7
    important_keywords: list[str] = Field(
        default_factory=lambda: ["important", "critical", "重要", "关键"]
    )
    failure_keywords: list[str] = Field(
        default_factory=lambda: ["error", "failed", "exception", "错误"]
    )

    # Timeouts and retry
    tool_timeout: float = Field(30.0, gt=0)
    stream_read_timeout: float = Field(30.0, gt=0)
    heartbeat_interval: float = Field(15.0, gt=0)
    max_attempts: int = Field(3, ge=1)  # API attempts per round-trip, first try included
    retry_backoff_base: float = Field(1.0, ge=0)
    retry_backoff_max: float = Field(30.0, ge=0)
    max_turns: int = Field(10, gt=0)  # Max tool use iterations per user turn

    # Storage
    config_dir: Path = Field(default_factory=_default_config_dir)
    conversation_cache_size: int = Field(100, gt=0)
    compact_keep_recent: int = Field(20, ge=0)
    compact_length_threshold: int = Field(1000, ge=0)

    # Tool permissions
    capabilities: list[str] = Field(default_factory=lambda: ["read", "write"])
    allowed_tools: list[str] = Field(default_factory=list)
    denied_tools: list[str] = Field(default_factory=list)
    working_directory: Path | None = None

    # Session
    interactive: bool = True
    debug: bool = False
    log_level: str = "warning"

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "Settings":
        if not 0 < self.warning_ratio < self.error_ratio < self.compression_ratio <= 1:
            raise ValueError(
                "context thresholds must satisfy 0 < warning_ratio < error_ratio "
                f"< compression_ratio <= 1 (got {self.warning_ratio}, "
                f"{self.error_ratio}, {self.compression_ratio})"
            )
        if self.heartbeat_interval >= self.stream_read_timeout:
            raise ValueError(
                f"heartbeat_interval ({self.heartbeat_interval}) must be < "
                f"stream_read_timeout ({self.stream_read_timeout})"
            )
        if self.min_retain < 1:
            raise ValueError("min_retain must be >= 1")
        return self

    @property
    def conversations_dir(self) -> Path:
        return self.config_dir / "conversations"

    @property
    def memory_file(self) -> Path:
        return self.config_dir / "memory.json"

    @property
    def usage_dir(self) -> Path:
        return self.config_dir / "usage"

    def with_overrides(self, **changes: Any) -> "Settings":
        """Return a new validated snapshot with changes applied.

        Raises ConfigError for unknown keys or values that fail validation.
        """
        unknown = sorted(set(changes) - set(type(self).model_fields))
        if unknown:
            raise ConfigError(f"Unknown configuration key: {', '.join(unknown)}")
        data = self.model_dump()
        data.update(changes)
        try:
            return type(self).model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e.errors()[0]['msg']}") from e

    def coerce(self, key: str, raw: str) -> Any:
        """Convert a raw string from the command line to the field's shape.

        List fields take comma-separated values and "none" clears optional
        fields. Everything else is left to pydantic's lax validation.
        """
        field = type(self).model_fields.get(key)
        if field is None:
            raise ConfigError(f"Unknown configuration key: {key}")
        if get_origin(field.annotation) is list:
            return [part.strip() for part in raw.split(",") if part.strip()]
        if raw.lower() in ("none", "null") and type(None) in get_args(field.annotation):
            return None
        return raw

    def display(self) -> dict[str, Any]:
        """Configuration as shown to the user, with secrets masked."""
        data = self.model_dump(mode="json")
        for key in _SECRET_KEYS:
            if data.get(key):
                data[key] = data[key][:7] + "..."
        return data


def load_settings(**overrides: Any) -> Settings:
    """Build the startup snapshot, mapping validation failures to ConfigError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
