"""
Configuration system for QueryGuard.

Implements 12-factor config principles:
- Environment variables as primary config source
- Optional YAML/JSON config file for local development
- Per-rule enable switches
- Per-environment profiles

Usage:
    from queryguard.config import get_config

    config = get_config()

    if config.is_rule_enabled("enforce_row_limit"):
        ...

    timeout = config.session_timeout_seconds
"""

from __future__ import annotations

import json
import logging
import os
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from queryguard.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "QUERYGUARD_"
SUPPORTED_MODES = ("audit", "lending")


class Environment(str, Enum):
    """Environment profiles with different default behaviors."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def from_string(cls, value: str) -> "Environment":
        """Parse environment from string, defaulting to development."""
        try:
            return cls(value.lower())
        except ValueError:
            return cls.DEVELOPMENT


class RuleConfig(BaseModel):
    """Configuration for a single optimization rule."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description="Whether the rule is enabled")


class Config(BaseModel):
    """
    QueryGuard configuration.

    Loaded from environment variables and optional config file.
    Session timings are expressed in seconds.
    """

    model_config = ConfigDict(frozen=True)

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Current environment (development/staging/production)",
    )
    default_mode: str = Field(
        default="audit",
        description="Workflow mode used when a caller does not name one",
    )

    # Query limits
    max_row_limit: int = Field(
        default=5000,
        gt=0,
        description="Upper bound for row limits added or clamped by the optimizer",
    )

    # Sessions
    session_timeout_seconds: float = Field(
        default=12 * 60 * 60,
        gt=0,
        description="Maximum session age before eviction",
    )
    max_sessions_per_client: int = Field(
        default=5,
        gt=0,
        description="Sessions kept per client before the oldest is evicted",
    )
    cleanup_interval_seconds: float = Field(
        default=60 * 60,
        gt=0,
        description="Interval between background expiry sweeps",
    )

    # Persistence
    persistent_storage: bool = Field(
        default=False,
        description="Mirror session snapshots to the shared session store",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the shared session store",
    )

    # Performance model
    table_statistics_file: str | None = Field(
        default=None,
        description="YAML/JSON file with extra table statistics",
    )

    rules: dict[str, RuleConfig] = Field(
        default_factory=dict,
        description="Per-rule configurations",
    )

    debug: bool = Field(default=False, description="Verbose pipeline logging")

    @model_validator(mode="before")
    @classmethod
    def _environment_profile(cls, data: Any) -> Any:
        # production keeps session snapshots unless persistence is set explicitly
        if not isinstance(data, dict) or "persistent_storage" in data:
            return data
        environment = data.get("environment")
        if environment is None:
            return data
        if Environment.from_string(str(getattr(environment, "value", environment))) == Environment.PRODUCTION:
            return {**data, "persistent_storage": True}
        return data

    @field_validator("default_mode")
    @classmethod
    def _check_mode(cls, value: str) -> str:
        value = value.lower()
        if value not in SUPPORTED_MODES:
            raise ValueError(f"default_mode must be one of {', '.join(SUPPORTED_MODES)}")
        return value

    def is_rule_enabled(self, rule_id: str) -> bool:
        """Check if a rule is enabled."""
        if rule_id in self.rules:
            return self.rules[rule_id].enabled
        return True


def _parse_env_bool(value: str | None, default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Could not parse %s=%s, using %s", key, value, default)
        return default


def _parse_env_float(key: str, default: float) -> float:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Could not parse %s=%s, using %s", key, value, default)
        return default


def load_config_from_env() -> Config:
    """
    Load configuration from environment variables.

    Environment variable naming convention:
    - QUERYGUARD_<SETTING> for global settings
    - QUERYGUARD_RULE_<RULE_ID>_ENABLED for rule switches

    Examples:
    - QUERYGUARD_ENVIRONMENT=production
    - QUERYGUARD_MAX_ROW_LIMIT=2000
    - QUERYGUARD_RULE_OPTIMIZE_JOINS_ENABLED=false
    """
    env = os.environ
    config_kwargs: dict[str, Any] = {
        "environment": Environment.from_string(env.get(f"{ENV_PREFIX}ENVIRONMENT", "development")),
        "default_mode": env.get(f"{ENV_PREFIX}DEFAULT_MODE", "audit"),
        "max_row_limit": _parse_env_int(f"{ENV_PREFIX}MAX_ROW_LIMIT", 5000),
        "session_timeout_seconds": _parse_env_float(
            f"{ENV_PREFIX}SESSION_TIMEOUT_SECONDS", 12 * 60 * 60
        ),
        "max_sessions_per_client": _parse_env_int(f"{ENV_PREFIX}MAX_SESSIONS_PER_CLIENT", 5),
        "cleanup_interval_seconds": _parse_env_float(
            f"{ENV_PREFIX}CLEANUP_INTERVAL_SECONDS", 60 * 60
        ),
        "redis_url": env.get(f"{ENV_PREFIX}REDIS_URL", "redis://localhost:6379/0"),
        "table_statistics_file": env.get(f"{ENV_PREFIX}TABLE_STATISTICS_FILE"),
        "debug": _parse_env_bool(env.get(f"{ENV_PREFIX}DEBUG"), False),
    }

    rules: dict[str, RuleConfig] = {}
    rule_prefix = f"{ENV_PREFIX}RULE_"
    suffix = "_ENABLED"
    for key, value in env.items():
        if key.startswith(rule_prefix) and key.endswith(suffix):
            rule_id = key[len(rule_prefix):-len(suffix)].lower()
            if rule_id:
                rules[rule_id] = RuleConfig(enabled=_parse_env_bool(value, True))
    config_kwargs["rules"] = rules

    persistent = env.get(f"{ENV_PREFIX}PERSISTENT_STORAGE")
    if persistent is not None:
        config_kwargs["persistent_storage"] = _parse_env_bool(persistent)

    try:
        return Config(**config_kwargs)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid environment configuration: {e}") from e


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a JSON or YAML file.

    A missing file falls back to environment variables; an unreadable or
    invalid one raises ConfigurationError.
    """
    if not path.exists():
        logger.warning("Config file not found: %s, using environment", path)
        return load_config_from_env()

    try:
        with open(path) as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to read config from {path}: {e}", str(path)) from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping", str(path))

    try:
        return Config(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config in {path}: {e}", str(path)) from e


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the global configuration instance.

    Loads from:
    1. QUERYGUARD_CONFIG_FILE environment variable (if set)
    2. Environment variables (default)

    Result is cached for the lifetime of the process.
    """
    config_file = os.environ.get(f"{ENV_PREFIX}CONFIG_FILE")

    if config_file:
        return load_config_from_file(Path(config_file))

    return load_config_from_env()


def reset_config() -> None:
    """Reset the cached configuration (mainly for testing)."""
    get_config.cache_clear()
