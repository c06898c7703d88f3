"""Tests for the background watcher."""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path

from midas.phase import load_phase_state, set_phase
from midas.phases import Phase
from midas.tracker import load_tracker, mark_analysis_complete, record_gate_results
from midas.watcher import (
    detect_file_changes,
    has_files_changed_since_analysis,
    scan_recent_files,
    watch,
)


def _touch(path: Path, mtime: float | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("x")
    if mtime is not None:
        os.utime(path, (mtime, mtime))


def test_scan_skips_hidden_and_vendor_directories(project_dir: Path):
    _touch(project_dir / "src" / "app.py")
    _touch(project_dir / "README.md")
    _touch(project_dir / ".git" / "HEAD")
    _touch(project_dir / "node_modules" / "pkg" / "index.js")
    _touch(project_dir / "__pycache__" / "app.cpython-312.pyc")
    _touch(project_dir / ".midas" / "state.json")
    _touch(project_dir / ".env")

    paths = {f.path for f in scan_recent_files(project_dir, since=0)}
    assert paths == {"src/app.py", "README.md"}


def test_scan_respects_cutoff_and_orders_newest_first(project_dir: Path):
    now = time.time()
    _touch(project_dir / "old.py", now - 7200)
    _touch(project_dir / "recent.py", now - 60)
    _touch(project_dir / "newest.py", now - 5)

    files = scan_recent_files(project_dir)
    assert [f.path for f in files] == ["newest.py", "recent.py"]
    assert files[0].modified_at.endswith("Z")


def test_scan_depth_limit(project_dir: Path):
    deep = project_dir
    for i in range(10):
        deep = deep / f"d{i}"
    _touch(deep / "buried.py")
    _touch(project_dir / "d0" / "shallow.py")

    paths = {f.path for f in scan_recent_files(project_dir, since=0)}
    assert paths == {"d0/shallow.py"}


def test_watch_records_activity(project_dir: Path):
    _touch(project_dir / "main.py")
    stats = watch(project_dir, interval=0, max_cycles=1)
    assert stats.cycles == 1
    assert stats.files_recorded == 1
    assert [f.path for f in load_tracker(project_dir).recent_files] == ["main.py"]


def test_watch_auto_advances_when_gates_pass(project_dir: Path):
    set_phase(project_dir, Phase("BUILD", "IMPLEMENT"))
    record_gate_results(project_dir, compiles=True, tests=True, lints=True)

    stats = watch(project_dir, interval=0, max_cycles=1)
    assert stats.advances == 1
    assert load_phase_state(project_dir).current == Phase("BUILD", "TEST")


def test_watch_stops_on_event(project_dir: Path):
    stop = threading.Event()
    stop.set()
    stats = watch(project_dir, interval=10, stop_event=stop)
    assert stats.cycles == 0


def test_detect_file_changes(project_dir: Path):
    now = time.time()
    _touch(project_dir / "app.py", now - 7200)
    _touch(project_dir / "lib" / "util.py", now - 7200)

    first = detect_file_changes(project_dir)
    assert first is not None
    assert first.added == ["app.py", "lib/util.py"]

    _touch(project_dir / "app.py", now - 10)
    (project_dir / "lib" / "util.py").unlink()
    _touch(project_dir / "new.py")
    second = detect_file_changes(project_dir)
    assert second is not None
    assert second.to_dict() == {
        "changed": ["app.py"],
        "added": ["new.py"],
        "deleted": ["lib/util.py"],
    }


def test_files_changed_since_analysis(project_dir: Path):
    assert has_files_changed_since_analysis(project_dir)

    _touch(project_dir / "app.py", time.time() - 60)
    mark_analysis_complete(project_dir)
    assert not has_files_changed_since_analysis(project_dir)

    _touch(project_dir / "app.py", time.time() + 5)
    assert has_files_changed_since_analysis(project_dir)


def test_watch_infers_phase_from_recorded_files(project_dir: Path):
    _touch(project_dir / "tests" / "test_app.py")
    watch(project_dir, interval=0, max_cycles=1)
    assert load_tracker(project_dir).inferred_phase == Phase("PLAN", "BRAINLIFT")
