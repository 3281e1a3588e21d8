"""
Registry configuration loader.

Loads ``civreg.toml``:

    [registry]
    data_dir = "var/registry"        # relative to the config file
    ruleset = "rules/local.toml"     # optional; defaults to the bundled core ruleset
    notification_window_days = 14
    conflict_retries = 0
    audit = true

    [logging]
    level = "WARNING"

CIVREG_DATA_DIR overrides ``data_dir``.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

CONFIG_FILENAME = "civreg.toml"
DATA_DIR_ENV = "CIVREG_DATA_DIR"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class RegistryConfig:
    data_dir: Path | None = None
    ruleset: Path | None = None
    notification_window_days: int = 14
    conflict_retries: int = 0
    audit: bool = True
    log_level: str = "WARNING"


def _int(section: dict[str, Any], key: str, default: int, *, minimum: int = 0) -> int:
    value = section.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
        raise ValueError(f"registry.{key} must be an integer >= {minimum}, got {value!r}")
    return value


def _path(value: Any, base: Path, key: str) -> Path | None:
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"registry.{key} must be a non-empty string")
    path = Path(value).expanduser()
    return path if path.is_absolute() else (base / path)


def parse_config(data: dict[str, Any], *, base: Path, env: Mapping[str, str] | None = None) -> RegistryConfig:
    """
    Build a RegistryConfig from parsed TOML.

    Raises:
        ValueError: a key has the wrong type or range
    """
    env = os.environ if env is None else env
    registry = data.get("registry", {})
    logging_section = data.get("logging", {})
    if not isinstance(registry, dict) or not isinstance(logging_section, dict):
        raise ValueError("[registry] and [logging] must be tables")

    data_dir = _path(registry.get("data_dir"), base, "data_dir")
    if env.get(DATA_DIR_ENV):
        data_dir = Path(env[DATA_DIR_ENV]).expanduser()

    audit = registry.get("audit", True)
    if not isinstance(audit, bool):
        raise ValueError(f"registry.audit must be true or false, got {audit!r}")

    level = str(logging_section.get("level", "WARNING")).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {', '.join(LOG_LEVELS)}, got {level!r}")

    return RegistryConfig(
        data_dir=data_dir,
        ruleset=_path(registry.get("ruleset"), base, "ruleset"),
        notification_window_days=_int(registry, "notification_window_days", 14),
        conflict_retries=_int(registry, "conflict_retries", 0),
        audit=audit,
        log_level=level,
    )


def load_config(path: Path | None = None, *, env: Mapping[str, str] | None = None) -> RegistryConfig:
    """
    Load configuration from ``path``, or defaults (plus environment) when None.

    Raises:
        FileNotFoundError: ``path`` does not exist
        ValueError: the TOML is malformed or a key is invalid
    """
    if path is None:
        return parse_config({}, base=Path.cwd(), env=env)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Failed to parse config TOML: {e}") from e
    return parse_config(data, base=path.parent.resolve(), env=env)


def find_config(start: Path) -> Path | None:
    """Find civreg.toml by walking up from ``start``."""
    cur = start.resolve()
    for p in (cur, *cur.parents):
        candidate = p / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None
