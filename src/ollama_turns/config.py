"""Configuration loading and validation for the ollamaturns client."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "ollamaturns"
CONFIG_PATH = CONFIG_DIR / "config.toml"
HOST_ENV_VAR = "OLLAMA_TURNS_HOST"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _non_empty_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class AppConfig(BaseModel):
    """Application metadata."""

    title: str = "ollamaturns"

    @field_validator("title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        return _non_empty_string(value)


class OllamaConfig(BaseModel):
    """Ollama endpoint and model settings."""

    host: str = "http://localhost:11434"
    model: str = ""
    timeout: int = Field(default=120, ge=1, le=3600)
    title_model_hints: list[str] = Field(default_factory=lambda: ["phi", "gemma:2b"])

    @field_validator("host", mode="before")
    @classmethod
    def _validate_host(cls, value: Any) -> str:
        return _non_empty_string(value)

    @field_validator("model", mode="before")
    @classmethod
    def _normalize_model(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("model must be a string.")
        return value.strip()

    @field_validator("title_model_hints", mode="before")
    @classmethod
    def _validate_hints(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("title_model_hints must be a list of strings.")
        hints: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError("Each title model hint must be a string.")
            candidate = item.strip().lower()
            if candidate and candidate not in hints:
                hints.append(candidate)
        return hints


class SecurityConfig(BaseModel):
    """Which Ollama hosts the client may talk to."""

    allow_remote_hosts: bool = False
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "::1"]

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def _validate_allowed_hosts(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("security.allowed_hosts must be a list of hostnames.")
        hosts: list[str] = []
        for item in value:
            name = item.strip().lower() if isinstance(item, str) else ""
            if name and name not in hosts:
                hosts.append(name)
        if not hosts:
            raise ValueError("security.allowed_hosts needs at least one hostname.")
        return hosts


class LoggingConfig(BaseModel):
    """Log level, format, and optional log file."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/ollamaturns/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        level = _non_empty_string(value).upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"logging.level {level!r} is not one of {sorted(VALID_LOG_LEVELS)}.")
        return level

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _non_empty_string(value)


class PersistenceConfig(BaseModel):
    """Where the chat collection snapshot lives."""

    enabled: bool = True
    state_path: str = "~/.local/state/ollamaturns/state.json"

    @field_validator("state_path", mode="before")
    @classmethod
    def _validate_path_string(cls, value: Any) -> str:
        return _non_empty_string(value)


class ConversationConfig(BaseModel):
    """Conversation behavior toggles."""

    edit_branch_policy: Literal["keep", "truncate"] = "keep"
    generate_titles: bool = True

    @field_validator("edit_branch_policy", mode="before")
    @classmethod
    def _normalize_policy(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("edit_branch_policy must be a string.")
        return value.strip().lower()


def _check_host_policy(host: str, security: SecurityConfig) -> None:
    """Reject non-HTTP hosts and, unless allowed, hosts outside the allow-list."""
    url = urlparse(host)
    if url.scheme.lower() not in ("http", "https"):
        raise ValueError(f"ollama.host {host!r} needs an http:// or https:// scheme.")
    name = (url.hostname or "").strip().lower()
    if not name:
        raise ValueError(f"ollama.host {host!r} has no hostname.")
    if security.allow_remote_hosts or name in security.allowed_hosts:
        return
    raise ValueError(
        f"ollama.host {name!r} is remote; add it to security.allowed_hosts "
        "or set security.allow_remote_hosts."
    )


class Config(BaseModel):
    """All configuration sections."""

    app: AppConfig = AppConfig()
    ollama: OllamaConfig = OllamaConfig()
    security: SecurityConfig = SecurityConfig()
    logging: LoggingConfig = LoggingConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    conversation: ConversationConfig = ConversationConfig()

    @model_validator(mode="after")
    def _validate_security_policy(self) -> Config:
        _check_host_policy(self.ollama.host, self.security)
        return self


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Create the config directory if needed and return it."""
    directory = CONFIG_DIR if config_dir is None else config_dir
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning(
            "config.dir.unavailable",
            extra={"event": "config.dir.unavailable", "path": str(directory), "error": str(exc)},
        )
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``override`` laid over it, section by section."""
    result: dict[str, Any] = deepcopy(base)
    for name, incoming in override.items():
        current = result.get(name)
        if isinstance(current, dict) and isinstance(incoming, dict):
            result[name] = _deep_merge(current, incoming)
        else:
            result[name] = incoming
    return result


def _enforce_private_permissions(path: Path) -> None:
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning(
            "config.permissions.failed",
            extra={"event": "config.permissions.failed", "path": str(path), "error": str(exc)},
        )


def _apply_env_overrides(raw: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    host = environ.get(HOST_ENV_VAR, "").strip()
    if not host:
        return raw
    return _deep_merge(raw, {"ollama": {"host": host}})


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate ``raw``; invalid values fall back to the defaults as a whole."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={
                "event": "config.invalid",
                "errors": exc.error_count(),
                "detail": str(exc),
            },
        )
        return deepcopy(DEFAULT_CONFIG)
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    _enforce_private_permissions(path)
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        LOGGER.warning(
            "config.parse.failed",
            extra={"event": "config.parse.failed", "path": str(path), "error": str(exc)},
        )
        return {}


def load_config(
    config_path: Path | None = None, environ: dict[str, str] | None = None
) -> dict[str, dict[str, Any]]:
    """Load ``config.toml``, lay it over the defaults, apply env overrides, validate.

    ``config_path`` and ``environ`` exist for tests and tooling.
    """
    target_path = CONFIG_PATH if config_path is None else config_path
    ensure_config_dir(target_path.parent)
    merged = _deep_merge(DEFAULT_CONFIG, _read_toml(target_path))
    merged = _apply_env_overrides(merged, dict(os.environ) if environ is None else environ)
    return _validate_config(merged)
