"""Per-project midas settings.

Projects may tune consumer policies in ``.midas/config.toml``::

    [state]
    history_limit = 200

    [stuck]
    after_hours = 2
    fix_attempts = 2

    [gates]
    stale_minutes = 10

Missing files, parse errors and out-of-range values all fall back to the
defaults below. The document store never reads this file.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from typing import Any

from midas.paths import config_path

log = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 200
DEFAULT_STUCK_AFTER_HOURS = 2.0
DEFAULT_STUCK_FIX_ATTEMPTS = 2
DEFAULT_GATE_STALE_MINUTES = 10.0


@dataclass(frozen=True)
class Settings:
    """Effective consumer policy for one project."""

    history_limit: int = DEFAULT_HISTORY_LIMIT
    stuck_after_hours: float = DEFAULT_STUCK_AFTER_HOURS
    stuck_fix_attempts: int = DEFAULT_STUCK_FIX_ATTEMPTS
    gate_stale_minutes: float = DEFAULT_GATE_STALE_MINUTES


def _read_config_file(project_dir: str | os.PathLike[str]) -> dict[str, Any]:
    path = config_path(project_dir)
    if not path.exists():
        return {}
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}
    return raw if isinstance(raw, dict) else {}


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def _int_setting(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        log.warning("config.toml: ignoring invalid %s=%r", key, value)
        return default
    return value


def _float_setting(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        log.warning("config.toml: ignoring invalid %s=%r", key, value)
        return default
    return float(value)


def load_settings(project_dir: str | os.PathLike[str]) -> Settings:
    """Load ``.midas/config.toml`` for a project, falling back to defaults."""
    raw = _read_config_file(project_dir)
    state = _section(raw, "state")
    stuck = _section(raw, "stuck")
    gates = _section(raw, "gates")
    return Settings(
        history_limit=_int_setting(state, "history_limit", DEFAULT_HISTORY_LIMIT),
        stuck_after_hours=_float_setting(stuck, "after_hours", DEFAULT_STUCK_AFTER_HOURS),
        stuck_fix_attempts=_int_setting(stuck, "fix_attempts", DEFAULT_STUCK_FIX_ATTEMPTS),
        gate_stale_minutes=_float_setting(gates, "stale_minutes", DEFAULT_GATE_STALE_MINUTES),
    )
