"""Shared test fixtures: an empty project directory per test."""

from pathlib import Path

import pytest

from midas.paths import state_dir


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    """A fresh project with no ``.midas/`` directory yet."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture()
def write_config(project_dir: Path):
    """Write ``.midas/config.toml`` for the project."""

    def _write(text: str) -> Path:
        directory = state_dir(project_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / "config.toml"
        path.write_text(text)
        return path

    return _write
