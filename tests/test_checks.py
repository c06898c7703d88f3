"""Tests for check statuses."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from midas import store
from midas.checks import (
    all_check_statuses,
    check_summary,
    get_check_status,
    reset_check_statuses,
    update_check_status,
)
from midas.documents import CHECKS_DOCUMENT


def test_update_and_get(project_dir: Path):
    result = update_check_status(project_dir, "security-review", "completed")
    assert result.success
    check = get_check_status(project_dir, "security-review")
    assert check is not None
    assert check.status == "completed"
    assert check.skip_reason is None
    assert get_check_status(project_dir, "missing") is None


def test_unknown_status_is_rejected(project_dir: Path):
    with pytest.raises(ValueError, match="Unknown check status"):
        update_check_status(project_dir, "lint", "done")
    assert all_check_statuses(project_dir) == {}


def test_empty_key_is_rejected(project_dir: Path):
    with pytest.raises(ValueError):
        update_check_status(project_dir, "", "pending")


def test_long_skip_reason_round_trips_exactly(project_dir: Path):
    reason = ("Skipped: no staging env · «ü» \"quoted\" \\ back\n" * 60)[:2000]
    assert len(reason) == 2000

    update_check_status(project_dir, "deploy-smoke", "skipped", reason)

    check = get_check_status(project_dir, "deploy-smoke")
    assert check is not None
    assert check.skip_reason == reason
    raw = json.loads(store.document_path(project_dir, CHECKS_DOCUMENT).read_text("utf-8"))
    assert raw["payload"]["deploy-smoke"]["skip_reason"].encode() == reason.encode()


def test_skip_reason_only_kept_for_skipped(project_dir: Path):
    update_check_status(project_dir, "lint", "completed", "irrelevant")
    check = get_check_status(project_dir, "lint")
    assert check is not None
    assert check.skip_reason is None


def test_summary_counts_every_status(project_dir: Path):
    assert check_summary(project_dir) == {"pending": 0, "completed": 0, "skipped": 0}
    update_check_status(project_dir, "a", "pending")
    update_check_status(project_dir, "b", "completed")
    update_check_status(project_dir, "c", "completed")
    update_check_status(project_dir, "d", "skipped", "n/a")
    assert check_summary(project_dir) == {"pending": 1, "completed": 2, "skipped": 1}


def test_status_change_overwrites(project_dir: Path):
    update_check_status(project_dir, "a", "pending")
    update_check_status(project_dir, "a", "completed")
    assert check_summary(project_dir) == {"pending": 0, "completed": 1, "skipped": 0}


def test_reset(project_dir: Path):
    update_check_status(project_dir, "a", "completed")
    result = reset_check_statuses(project_dir)
    assert result.success
    assert result.version == 2
    assert all_check_statuses(project_dir) == {}
