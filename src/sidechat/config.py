"""Configuration loading and validation for the orchestration layer."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "sidechat"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _require_text(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class ApiConfig(BaseModel):
    """Backend location and endpoint paths."""

    base_url: str = "http://localhost:8000"
    timeout_seconds: float = Field(default=120.0, gt=0, le=3600)
    app_name: str = "sidechat"
    source: str = "chat"
    conversations_path: str = "/api/conversations"
    completions_path: str = "/api/chat/v1/completions"
    image_completion_path: str = "/api/chat/send"
    upload_path: str = "/api/uploader/v1/file/upload-directly"

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        normalized = _require_text(value).rstrip("/")
        # Some deployments publish the API docs URL rather than the root.
        if normalized.endswith("/docs"):
            normalized = normalized[: -len("/docs")]
        return normalized

    @field_validator("app_name", "source", mode="before")
    @classmethod
    def _validate_non_empty_string(cls, value: Any) -> str:
        return _require_text(value)

    @field_validator(
        "conversations_path",
        "completions_path",
        "image_completion_path",
        "upload_path",
        mode="before",
    )
    @classmethod
    def _validate_path(cls, value: Any) -> str:
        normalized = _require_text(value)
        if not normalized.startswith("/"):
            normalized = f"/{normalized}"
        return normalized.rstrip("/")


class RetryConfig(BaseModel):
    """Retry envelope for completion requests."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=1.0, ge=0, le=60)
    retry_statuses: list[int] = Field(default_factory=lambda: [502, 503, 504])
    retry_image_completions: bool = False

    @field_validator("retry_statuses", mode="before")
    @classmethod
    def _validate_statuses(cls, value: Any) -> list[int]:
        if not isinstance(value, list):
            raise ValueError("retry_statuses must be a list of HTTP status codes.")
        statuses: list[int] = []
        for item in value:
            if isinstance(item, bool) or not isinstance(item, int):
                raise ValueError("retry_statuses entries must be integers.")
            if not 500 <= item <= 599:
                raise ValueError("Only 5xx statuses can be retried.")
            if item not in statuses:
                statuses.append(item)
        return statuses


class AttachmentsConfig(BaseModel):
    """Upload readiness polling limits."""

    max_wait_seconds: float = Field(default=10.0, gt=0, le=600)
    poll_interval_seconds: float = Field(default=0.2, gt=0, le=60)
    max_file_bytes: int = Field(default=20 * 1024 * 1024, ge=1)

    @model_validator(mode="after")
    def _interval_within_window(self) -> AttachmentsConfig:
        if self.poll_interval_seconds > self.max_wait_seconds:
            raise ValueError("poll_interval_seconds must not exceed max_wait_seconds.")
        return self


class ConversationConfig(BaseModel):
    """Conversation naming rules."""

    title_max_length: int = Field(default=30, ge=1, le=500)
    default_title: str = "New Conversation"

    @field_validator("default_title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        return _require_text(value)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/sidechat/sidechat.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Config(BaseModel):
    """Root configuration model for all sections."""

    api: ApiConfig = ApiConfig()
    retry: RetryConfig = RetryConfig()
    attachments: AttachmentsConfig = AttachmentsConfig()
    conversation: ConversationConfig = ConversationConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _validate_base_url_scheme(self) -> Config:
        parsed = urlparse(self.api.base_url)
        if parsed.scheme.lower() not in {"http", "https"}:
            raise ValueError("api.base_url must use http or https scheme.")
        if not (parsed.hostname or "").strip():
            raise ValueError("api.base_url must include a hostname.")
        return self


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _safe_default_config() -> dict[str, dict[str, Any]]:
    """Return a deep copy of validated default config data."""
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        config = Config.model_validate(raw)
        return config.model_dump()
    except ValidationError as exc:
        LOGGER.warning(
            "config.validation_failed",
            extra={"event": "config.validation_failed", "reason": str(exc)},
        )
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = _deep_merge(DEFAULT_CONFIG, raw_data)
    return _validate_config(merged)


def build_config(raw: dict[str, Any] | None = None) -> Config:
    """Return a validated ``Config`` model from a (possibly partial) mapping.

    Unlike ``load_config`` this raises ``ConfigValidationError`` instead of
    falling back, so programmatic callers see their mistakes.
    """
    merged = _deep_merge(DEFAULT_CONFIG, raw or {})
    try:
        return Config.model_validate(merged)
    except ValidationError as exc:
        raise ConfigValidationError(f"Invalid configuration: {exc}") from exc
