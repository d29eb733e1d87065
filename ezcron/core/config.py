"""
ezcron Configuration — loads and merges daemon settings from multiple sources.

Precedence (highest to lowest):
1. Explicit overrides (passed in code)
2. Environment variables (EZCRON_*)
3. Project config (./ezcron.toml)
4. User config (<base_dir>/config.toml)
5. Defaults (hardcoded)

Environment variable mapping:
    EZCRON_HOME → paths.base_dir
    EZCRON_TICK_INTERVAL → scheduler.tick_interval
    EZCRON_GRACE_SECONDS → executor.grace_seconds
    EZCRON_DEBOUNCE_MS → reload.debounce_ms
    EZCRON_LOG_RETENTION_DAYS → logs.retention_days

Job definitions are NOT configured here; they live as JSON files under
``<base_dir>/jobs`` and are handled by the reconciler.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ezcron.core.errors import ConfigError
from ezcron.core.paths import AppPaths

DEFAULT_HOME = "~/.ezcron"

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Sub-Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PathsConfig(BaseModel):
    """Where jobs, logs and runtime markers live."""

    base_dir: str = DEFAULT_HOME


class SchedulerConfig(BaseModel):
    """Tick loop configuration."""

    tick_interval: float = Field(default=1.0, gt=0)
    shutdown_grace_seconds: float = 30.0  # wait for in-flight runs on stop


class ExecutorConfig(BaseModel):
    """Subprocess execution configuration."""

    grace_seconds: float = Field(default=3.0, ge=0)
    stderr_tail_bytes: int = Field(default=2048, ge=0)


class ReloadConfig(BaseModel):
    """Hot-reload configuration."""

    watch: bool = True
    debounce_ms: int = Field(default=300, ge=0)


class HistoryConfig(BaseModel):
    """Run history configuration."""

    persist: bool = True
    max_records_per_job: int = Field(default=200, ge=1)
    state_recent_runs: int = 100


class LogConfig(BaseModel):
    """Event log configuration."""

    retention_days: int = Field(default=30, ge=1)
    level: str = "INFO"

    @field_validator("level", mode="before")
    @classmethod
    def _known_level(cls, value: Any) -> str:
        level = str(value).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return level


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Main Config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class EzcronConfig(BaseModel):
    """Root configuration for ezcron."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    reload: ReloadConfig = Field(default_factory=ReloadConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    logs: LogConfig = Field(default_factory=LogConfig)

    @staticmethod
    def load(
        overrides: dict[str, Any] | None = None,
        project_path: Path | None = None,
        user_path: Path | None = None,
    ) -> EzcronConfig:
        """
        Load configuration from all sources and merge.

        Precedence: overrides > env vars > project toml > user toml > defaults
        """
        merged: dict[str, Any] = {}

        env_data = _load_from_env()

        # The user config lives inside the base dir, so resolve that first.
        base_dir = (
            (overrides or {}).get("paths", {}).get("base_dir")
            or env_data.get("paths", {}).get("base_dir")
            or DEFAULT_HOME
        )

        # Layer 1: User config (<base_dir>/config.toml)
        user_config_path = user_path or Path(base_dir).expanduser() / "config.toml"
        if user_config_path.exists():
            _deep_merge(merged, _load_toml(user_config_path))

        # Layer 2: Project config (./ezcron.toml)
        project_config_path = project_path or Path.cwd() / "ezcron.toml"
        if project_config_path.exists():
            _deep_merge(merged, _load_toml(project_config_path))

        # Layer 3: Environment variables
        _deep_merge(merged, env_data)

        # Layer 4: Explicit overrides
        if overrides:
            _deep_merge(merged, overrides)

        _substitute_env_vars(merged)

        try:
            return EzcronConfig(**merged)
        except Exception as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def get_paths(self) -> AppPaths:
        """Resolve the directory layout under the configured base dir."""
        return AppPaths(Path(self.paths.base_dir).expanduser())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Internal Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


def _load_from_env() -> dict[str, Any]:
    """Load configuration from EZCRON_* environment variables."""
    result: dict[str, Any] = {}

    env_mapping = {
        "EZCRON_HOME": ("paths", "base_dir"),
        "EZCRON_TICK_INTERVAL": ("scheduler", "tick_interval"),
        "EZCRON_SHUTDOWN_GRACE": ("scheduler", "shutdown_grace_seconds"),
        "EZCRON_GRACE_SECONDS": ("executor", "grace_seconds"),
        "EZCRON_STDERR_TAIL_BYTES": ("executor", "stderr_tail_bytes"),
        "EZCRON_WATCH": ("reload", "watch"),
        "EZCRON_DEBOUNCE_MS": ("reload", "debounce_ms"),
        "EZCRON_HISTORY_PERSIST": ("history", "persist"),
        "EZCRON_LOG_RETENTION_DAYS": ("logs", "retention_days"),
        "EZCRON_LOG_LEVEL": ("logs", "level"),
    }

    for env_var, (section, key) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is not None:
            result.setdefault(section, {})
            # paths are never coerced; "1" is a valid directory name
            result[section][key] = value if section == "paths" else _convert_value(value)

    return result


def _convert_value(value: str) -> Any:
    """Convert string value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


def _deep_merge(base: dict, override: dict) -> None:
    """Deep merge override into base (mutates base)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _substitute_env_vars(data: dict) -> None:
    """Recursively substitute ${ENV_VAR} patterns in string values."""
    for key, value in data.items():
        if isinstance(value, dict):
            _substitute_env_vars(value)
        elif isinstance(value, str):
            data[key] = _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
