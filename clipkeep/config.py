from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .db import DEFAULT_DB_PATH
from .errors import ValidationError
from .monitor import DEFAULT_IGNORED_APPLICATIONS

DEFAULT_CONFIG_PATH = Path("~/.config/clipkeep/config.json").expanduser()
DEFAULT_BACKUP_DIR = "~/.clipkeep/backups"

CONFIG_ENV_OVERRIDES = {
    "db_path": "CLIPKEEP_DB",
    "max_history_items": "CLIPKEEP_MAX_HISTORY_ITEMS",
    "poll_interval_ms": "CLIPKEEP_POLL_INTERVAL_MS",
    "debounce_ms": "CLIPKEEP_DEBOUNCE_MS",
    "ignore_applications": "CLIPKEEP_IGNORE_APPLICATIONS",
    "backup_enabled": "CLIPKEEP_BACKUP_ENABLED",
    "backup_dir": "CLIPKEEP_BACKUP_DIR",
    "backup_interval_hours": "CLIPKEEP_BACKUP_INTERVAL_HOURS",
    "backup_keep": "CLIPKEEP_BACKUP_KEEP",
    "slow_operation_ms": "CLIPKEEP_SLOW_OPERATION_MS",
    "memory_threshold_mb": "CLIPKEEP_MEMORY_THRESHOLD_MB",
}

_INT_RANGES: dict[str, tuple[int, int | None]] = {
    "max_history_items": (10, 10000),
    "poll_interval_ms": (10, None),
    "debounce_ms": (0, None),
    "backup_interval_hours": (1, 168),
    "backup_keep": (0, None),
    "slow_operation_ms": (1, None),
    "memory_threshold_mb": (1, None),
}
_BOOL_KEYS = {"backup_enabled"}
_LIST_KEYS = {"ignore_applications"}
_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CLIPKEEP_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    """Return the JSON object stored at the config path, or {} when there is none.

    Raises ValidationError when the file is not a JSON object.
    """

    config_path = get_config_path(path)
    try:
        raw = config_path.read_text()
    except FileNotFoundError:
        return {}
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(
            f"invalid config json in {config_path}: line {exc.lineno} column {exc.colno}"
        ) from exc
    if not isinstance(data, dict):
        raise ValidationError(f"config in {config_path} must be an object")
    return data


def _env_overrides() -> dict[str, str]:
    return {
        key: os.environ[env_var]
        for key, env_var in CONFIG_ENV_OVERRIDES.items()
        if env_var in os.environ
    }


@dataclass
class ClipkeepConfig:
    db_path: str = str(DEFAULT_DB_PATH)
    max_history_items: int = 1000
    poll_interval_ms: int = 250
    debounce_ms: int = 100
    ignore_applications: list[str] = field(
        default_factory=lambda: list(DEFAULT_IGNORED_APPLICATIONS)
    )
    backup_enabled: bool = False
    backup_dir: str = DEFAULT_BACKUP_DIR
    backup_interval_hours: int = 24
    backup_keep: int = 10
    slow_operation_ms: int = 100
    memory_threshold_mb: int = 50

    @property
    def resolved_db_path(self) -> Path:
        return Path(self.db_path).expanduser()

    @property
    def resolved_backup_dir(self) -> Path:
        return Path(self.backup_dir).expanduser()


def _rejected(message: str) -> None:
    warnings.warn(message, RuntimeWarning, stacklevel=4)


def _coerce_int(value: object, default: int, *, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        _rejected(f"Invalid int for {key}: {value!r}")
        return default
    try:
        parsed = int(value)
    except ValueError:
        _rejected(f"Invalid int for {key}: {value!r}")
        return default
    low, high = _INT_RANGES[key]
    if parsed < low or (high is not None and parsed > high):
        _rejected(f"Out of range value for {key}: {parsed}")
        return default
    return parsed


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    _rejected(f"Invalid bool for {key}: {value!r}")
    return default


def _coerce_str_list(value: object, *, key: str) -> list[str] | None:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        _rejected(f"Invalid list for {key}: {value!r}")
        return None
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def load_config(path: Path | None = None, *, strict: bool = False) -> ClipkeepConfig:
    """Build the effective config: defaults, then the config file, then CLIPKEEP_* env vars.

    A malformed config file raises ValidationError when ``strict`` is set and
    is otherwise reported as a RuntimeWarning and ignored.
    """

    try:
        data = read_config_file(path)
    except ValidationError as exc:
        if strict:
            raise
        warnings.warn(str(exc), RuntimeWarning, stacklevel=2)
        data = {}
    cfg = _apply_dict(ClipkeepConfig(), data)
    return _apply_dict(cfg, _env_overrides())


def _apply_dict(cfg: ClipkeepConfig, data: dict[str, Any]) -> ClipkeepConfig:
    known = {f.name for f in fields(cfg)}
    for key, value in data.items():
        # null in the file means "use the default"
        if key not in known or value is None:
            continue
        current = getattr(cfg, key)
        if key in _INT_RANGES:
            setattr(cfg, key, _coerce_int(value, current, key=key))
        elif key in _BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, current, key=key))
        elif key in _LIST_KEYS:
            parsed = _coerce_str_list(value, key=key)
            if parsed is not None:
                setattr(cfg, key, parsed)
        else:
            setattr(cfg, key, str(value))
    return cfg
