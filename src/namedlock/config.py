"""Application configuration.

Settings come from a JSON ``config.json`` (explicit path, else the current
directory, else the project root) and can be overridden from the
environment:

    NAMEDLOCK_DATABASE      SQLAlchemy URL or key=value;... DSN
    NAMEDLOCK_LOCK_BACKEND  mysql | memory | auto
    NAMEDLOCK_HOST / NAMEDLOCK_PORT
    NAMEDLOCK_LOG_LEVEL
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from namedlock.lib.database import DEFAULT_DATABASE_URL, normalize_db_url

logger = logging.getLogger(__name__)

ENV_PREFIX = "NAMEDLOCK_"


class ConfigurationError(Exception):
    """Raised when a config file cannot be read or holds invalid values."""


@dataclass
class AppConfig:
    database: str = DEFAULT_DATABASE_URL
    lock_backend: str = "auto"
    lock_history: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    pool_size: Optional[int] = None
    max_overflow: Optional[int] = None
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        return normalize_db_url(self.database)


def _find_config(path: Optional[str]) -> Optional[Path]:
    if path:
        return Path(path)
    candidate = Path.cwd() / "config.json"
    if candidate.exists():
        return candidate
    project_cfg = Path(__file__).resolve().parents[2] / "config.json"
    if project_cfg.exists():
        return project_cfg
    return None


def _read_json(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except OSError as exc:
        raise ConfigurationError(f"failed to read config file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"failed to parse JSON from {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a JSON object")
    return data


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _to_int(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{name}' must be an integer, got {value!r}") from exc


def load_config(path: Optional[str] = None, environ: Optional[dict] = None) -> AppConfig:
    """Build the effective AppConfig: defaults < config file < environment."""
    environ = os.environ if environ is None else environ
    raw: dict[str, Any] = {}

    cfg_path = _find_config(path)
    if cfg_path is not None:
        if not cfg_path.exists():
            raise ConfigurationError(f"config file not found: {cfg_path}")
        raw = _read_json(cfg_path)
        logger.debug("loaded config from %s", cfg_path)

    for key in ("database", "lock_backend", "host", "port", "log_level", "lock_history"):
        env_value = environ.get(ENV_PREFIX + key.upper())
        if env_value:
            raw[key] = env_value

    cfg = AppConfig()
    if raw.get("database"):
        cfg.database = str(raw["database"])
    if raw.get("lock_backend"):
        cfg.lock_backend = str(raw["lock_backend"]).lower()
    if "lock_history" in raw:
        cfg.lock_history = _to_bool(raw["lock_history"])
    if raw.get("host"):
        cfg.host = str(raw["host"])
    port = _to_int("port", raw.get("port"))
    if port is not None:
        cfg.port = port
    cfg.pool_size = _to_int("pool_size", raw.get("pool_size"))
    cfg.max_overflow = _to_int("max_overflow", raw.get("max_overflow"))
    if raw.get("log_level"):
        cfg.log_level = str(raw["log_level"]).upper()

    if cfg.lock_backend not in ("auto", "mysql", "memory"):
        raise ConfigurationError(f"unknown lock_backend '{cfg.lock_backend}'")
    return cfg
