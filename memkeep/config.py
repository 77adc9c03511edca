from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/memkeep/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "default_plan": "MEMKEEP_DEFAULT_PLAN",
    "db_timeout_s": "MEMKEEP_DB_TIMEOUT_S",
    "lock_ttl_s": "MEMKEEP_LOCK_TTL_S",
    "lock_ttl_max_s": "MEMKEEP_LOCK_TTL_MAX_S",
    "max_rollback_steps": "MEMKEEP_MAX_ROLLBACK_STEPS",
    "soft_limit_warn_ratio": "MEMKEEP_SOFT_LIMIT_WARN_RATIO",
    "conflict_separator": "MEMKEEP_CONFLICT_SEPARATOR",
    "access_threshold": "MEMKEEP_ACCESS_THRESHOLD",
    "feedback_threshold": "MEMKEEP_FEEDBACK_THRESHOLD",
    "relevance_threshold": "MEMKEEP_RELEVANCE_THRESHOLD",
    "health_threshold": "MEMKEEP_HEALTH_THRESHOLD",
    "max_versions_per_memory": "MEMKEEP_MAX_VERSIONS",
    "archive_purge_days": "MEMKEEP_ARCHIVE_PURGE_DAYS",
    "priority_step": "MEMKEEP_PRIORITY_STEP",
    "relevance_decay_rate": "MEMKEEP_RELEVANCE_DECAY_RATE",
    "relevance_pin_boost": "MEMKEEP_RELEVANCE_PIN_BOOST",
}

_INT_KEYS = {
    "lock_ttl_s",
    "lock_ttl_max_s",
    "max_rollback_steps",
    "access_threshold",
    "feedback_threshold",
    "max_versions_per_memory",
    "archive_purge_days",
    "priority_step",
}

_FLOAT_KEYS = {
    "db_timeout_s",
    "soft_limit_warn_ratio",
    "relevance_threshold",
    "health_threshold",
    "relevance_decay_rate",
    "relevance_pin_boost",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("MEMKEEP_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class MemkeepConfig:
    default_plan: str = "free"
    db_timeout_s: float = 5.0

    lock_ttl_s: int = 60
    lock_ttl_max_s: int = 3600
    max_rollback_steps: int = 50

    # Project soft limit: warn once usage crosses this share of the limit.
    soft_limit_warn_ratio: float = 0.8
    conflict_separator: str = "\n---\n"

    # Lifecycle defaults; callers may override per run.
    access_threshold: int = 10
    feedback_threshold: int = 3
    relevance_threshold: float = 5.0
    health_threshold: float = 15.0
    max_versions_per_memory: int = 50
    archive_purge_days: int = 90
    priority_step: int = 10

    relevance_decay_rate: float = 0.03
    relevance_pin_boost: float = 1.5


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def load_config(path: Path | None = None) -> MemkeepConfig:
    cfg = MemkeepConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: MemkeepConfig, data: dict[str, Any]) -> MemkeepConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if value is None:
            continue
        setattr(cfg, key, str(value))
    return cfg
