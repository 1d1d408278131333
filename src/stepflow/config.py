"""Configuration loading for stepflow.

Reads an engine config YAML file (usually ``stepflow.yaml``). Pydantic models
validate the schema; a handful of environment variables override file values
for deployment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from stepflow.durations import parse_duration_seconds
from stepflow.run_log import RunLog, RunLogHandler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


# ── Config Model ─────────────────────────────────────────────────────────────


class EngineConfig(BaseModel):
    """Engine-wide settings shared by every run of a ``WorkflowRunner``."""

    max_concurrency: int | None = Field(None, ge=1)  # None = unbounded
    default_step_timeout: float | None = None  # seconds, per attempt
    max_fallback_depth: int = Field(3, ge=0)
    log_level: LogLevel = "INFO"
    run_log_size: int = Field(20_000, ge=1)
    capability_plugins: list[str] = []  # dotted module paths

    @field_validator("default_step_timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_duration_seconds(v)
        return v

    @field_validator("default_step_timeout")
    @classmethod
    def _positive_timeout(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError(f"default_step_timeout must be positive, got {v}")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


# ── Loading ──────────────────────────────────────────────────────────────────


def load_config(path: str | Path) -> EngineConfig:
    """Load engine configuration from a YAML file.

    The file may hold the settings at the top level or under an ``engine:``
    key.

    Environment overrides:
        STEPFLOW_MAX_CONCURRENCY, STEPFLOW_DEFAULT_STEP_TIMEOUT,
        STEPFLOW_LOG_LEVEL

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"stepflow config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    if isinstance(raw.get("engine"), dict):
        raw = raw["engine"]

    # Environment variable overrides for deployment
    max_concurrency = os.environ.get("STEPFLOW_MAX_CONCURRENCY")
    if max_concurrency:
        raw["max_concurrency"] = int(max_concurrency)

    default_timeout = os.environ.get("STEPFLOW_DEFAULT_STEP_TIMEOUT")
    if default_timeout:
        raw["default_step_timeout"] = default_timeout

    log_level = os.environ.get("STEPFLOW_LOG_LEVEL")
    if log_level:
        raw["log_level"] = log_level

    config = EngineConfig(**raw)
    logger.info(
        "Loaded stepflow config: max_concurrency=%s, plugins=%d",
        config.max_concurrency,
        len(config.capability_plugins),
    )
    return config


def configure_logging(
    level: str | EngineConfig = "INFO",
    *,
    run_log: RunLog | None = None,
) -> RunLog | None:
    """Set up root logging in the standard stepflow format.

    When ``run_log`` is given, a ``RunLogHandler`` feeding it is attached to
    the root logger so run logs can be queried and streamed in-process.
    """
    if isinstance(level, EngineConfig):
        level = level.log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
    if run_log is not None:
        root = logging.getLogger()
        if not any(
            isinstance(h, RunLogHandler) and h.run_log is run_log for h in root.handlers
        ):
            root.addHandler(RunLogHandler(run_log))
    return run_log
