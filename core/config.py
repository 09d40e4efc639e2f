"""Runtime settings loaded from environment variables and an optional YAML file.

Environment variables win over the YAML file, which wins over defaults:

    RMAP_CONFIG            path to a YAML settings file (optional)
    RMAP_PATH              engine executable
    LOG_LEVEL              DEBUG|INFO|WARNING|ERROR
    HISTORY_CAPACITY       terminal jobs kept in history (default 10)
    JOB_RETENTION          terminal jobs kept queryable by id (default 100)
    KILL_GRACE_SECONDS     SIGTERM -> SIGKILL escalation delay (default 5)
    SUBSCRIBER_QUEUE_SIZE  per-subscriber event buffer (default 256)
    RULES_FILE             YAML rule table overrides (optional)
    HOST / PORT            HTTP bind address for the MCP server
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_ENGINE_PATH = "/usr/local/bin/rmap"


@dataclass(frozen=True)
class Settings:
    """Orchestrator settings."""

    engine_path: str = DEFAULT_ENGINE_PATH
    log_level: str = "INFO"
    history_capacity: int = 10
    job_retention: int = 100
    kill_grace_seconds: float = 5.0
    subscriber_queue_size: int = 256
    rules_file: str | None = None
    host: str = "0.0.0.0"
    port: int = 8080

    def __post_init__(self) -> None:
        if self.history_capacity < 1:
            raise ValueError("history_capacity must be at least 1")
        if self.job_retention < 1:
            raise ValueError("job_retention must be at least 1")
        if self.kill_grace_seconds < 0:
            raise ValueError("kill_grace_seconds must not be negative")
        if self.subscriber_queue_size < 1:
            raise ValueError("subscriber_queue_size must be at least 1")


# Settings field -> environment variable
ENV_VARS: dict[str, str] = {
    "engine_path": "RMAP_PATH",
    "log_level": "LOG_LEVEL",
    "history_capacity": "HISTORY_CAPACITY",
    "job_retention": "JOB_RETENTION",
    "kill_grace_seconds": "KILL_GRACE_SECONDS",
    "subscriber_queue_size": "SUBSCRIBER_QUEUE_SIZE",
    "rules_file": "RULES_FILE",
    "host": "HOST",
    "port": "PORT",
}


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw YAML/env value to the type of the Settings field."""
    if value is None:
        return None
    if name in {"history_capacity", "job_retention", "subscriber_queue_size", "port"}:
        return int(value)
    if name == "kill_grace_seconds":
        return float(value)
    return str(value)


def _load_yaml(config_file: str) -> dict[str, Any]:
    path = Path(config_file)
    if not path.exists():
        logger.warning("settings_file_missing", config_file=str(path))
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    return data


def load_settings(
    config_file: str | None = None, environ: dict[str, str] | None = None
) -> Settings:
    """
    Build Settings from defaults, an optional YAML file and the environment.

    Args:
        config_file: YAML settings file; falls back to $RMAP_CONFIG
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated Settings instance
    """
    env = os.environ if environ is None else environ
    config_file = config_file or env.get("RMAP_CONFIG")

    values: dict[str, Any] = {}
    known = {f.name for f in fields(Settings)}

    if config_file:
        for key, value in _load_yaml(config_file).items():
            if key not in known:
                logger.warning("settings_unknown_key", key=key, config_file=config_file)
                continue
            values[key] = _coerce(key, value)

    for name, var in ENV_VARS.items():
        raw = env.get(var)
        if raw not in (None, ""):
            values[name] = _coerce(name, raw)

    return Settings(**values)
