"""Canonical filesystem paths for per-project midas state."""

from __future__ import annotations

import os
from pathlib import Path

_env_state_dir = os.environ.get("MIDAS_STATE_DIR")
STATE_DIR_NAME = _env_state_dir or ".midas"

PHASE_FILE = "state.json"
TRACKER_FILE = "tracker.json"
CHECKS_FILE = "checks.json"
CONFIG_FILE = "config.toml"


def state_dir(project_dir: str | os.PathLike[str]) -> Path:
    """Return the hidden state directory for a project."""
    return Path(project_dir) / STATE_DIR_NAME


def config_path(project_dir: str | os.PathLike[str]) -> Path:
    return state_dir(project_dir) / CONFIG_FILE
