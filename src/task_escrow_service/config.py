"""
Configuration management for the task escrow service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Task ledger database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class AccountsConfig(BaseModel):
    """Account book (native currency balances) configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str
    initial_balance: int


class IdentityConfig(BaseModel):
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    verify_jws_path: str
    timeout_seconds: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class LimitsConfig(BaseModel):
    """Input size limits."""

    model_config = ConfigDict(extra="forbid")
    max_description_length: int
    max_deliverable_link_length: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    accounts: AccountsConfig
    identity: IdentityConfig
    request: RequestConfig
    limits: LimitsConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or ./config.yaml."""
    env_value = os.environ.get("CONFIG_PATH")
    if env_value:
        return Path(env_value)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and validate settings. Cached until clear_settings_cache() is called."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings so the next get_settings() re-reads the file."""
    get_settings.cache_clear()


REDACTION_MARKER = "***"
_SENSITIVE_KEYS = frozenset({"private_key", "secret", "password", "token"})


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""

    def _redact(value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: REDACTION_MARKER
                if any(marker in key.lower() for marker in _SENSITIVE_KEYS)
                else _redact(item)
                for key, item in value.items()
            }
        return value

    return _redact(get_settings().model_dump())
