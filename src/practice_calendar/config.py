"""Calendar engine configuration loading and validation.

Reads ``calendar.toml``, resolves ``${VAR}`` environment references, and
validates the ``[calendar]`` table into a ``CalendarConfig`` model.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Literal

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

CONFIG_FILENAME = "calendar.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when calendar configuration is missing, malformed, or invalid."""


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    jitter_ratio: float = Field(default=0.0, ge=0, le=1)


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    busy_ttl_seconds: float = Field(default=120, gt=0)
    default_ttl_seconds: float = Field(default=300, gt=0)
    max_entries: int = Field(default=1000, ge=1)
    compact_to: int = Field(default=500, ge=0)

    @model_validator(mode="after")
    def _compact_within_cap(self) -> CacheConfig:
        if self.compact_to > self.max_entries:
            raise ValueError("compact_to must not exceed max_entries")
        return self


class BatchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    size: int = Field(default=100, ge=1)


class ChannelsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ttl_seconds: int = Field(default=604800, ge=60)
    renewal_margin_hours: float = Field(default=24, gt=0)
    renewal_cron: str = "0 */6 * * *"

    @field_validator("renewal_cron")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"invalid cron expression: {value!r}")
        return value


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="practice_calendar", min_length=1)
    schema_: str | None = Field(default=None, alias="schema")


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    log_root: Path | None = None


class ServerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: str = "127.0.0.1"
    port: int = Field(default=8400, ge=1, le=65535)


class CalendarConfig(BaseModel):
    """Validated ``[calendar]`` table."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    provider: Literal["google", "memory"] = "google"
    owner_account_email: str = Field(min_length=3)
    webhook_url: str | None = None
    timezone: str = "Europe/London"
    credentials_json: str | None = None
    mode: str = "managed"

    retry: RetryConfig = Field(default_factory=RetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("webhook_url")
    @classmethod
    def _blank_webhook_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @model_validator(mode="after")
    def _google_requires_credentials(self) -> CalendarConfig:
        if self.provider == "google" and not (self.credentials_json or "").strip():
            raise ValueError("credentials_json is required when provider = 'google'")
        return self


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing name."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def parse_config(data: dict[str, Any]) -> CalendarConfig:
    """Validate an already-parsed TOML document."""
    data = resolve_env_vars(data)
    section = data.get("calendar")
    if not isinstance(section, dict):
        raise ConfigError("Missing [calendar] section in config")
    try:
        return CalendarConfig.model_validate(section)
    except ValidationError as exc:
        problems = "; ".join(
            f"calendar.{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            if err["loc"]
            else f"calendar: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid calendar configuration: {problems}") from exc


def load_config(path: Path) -> CalendarConfig:
    """Load and validate ``calendar.toml``.

    *path* may point at the file itself or at the directory containing it.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    path = Path(path)
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
