"""Background watcher: polls for recently modified project files, records them
in the tracker, and auto-advances the phase when verification gates pass.

Runs as its own process (``midas watch``) alongside CLI invocations and the
MCP server; all three share state only through the document store.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from midas import store
from midas.documents import FileActivity
from midas.paths import STATE_DIR_NAME
from midas.phase import maybe_auto_advance
from midas.tracker import (
    FileChanges,
    load_tracker,
    record_file_activity,
    replace_file_snapshot,
    update_inferred_phase,
)

log = logging.getLogger(__name__)

IGNORED_DIRS = frozenset(
    {"node_modules", ".git", "dist", "build", ".next", "__pycache__", "coverage", ".venv"}
)
MAX_SCAN_DEPTH = 6
MAX_SCAN_FILES = 500
DEFAULT_LOOKBACK_SECONDS = 3600
DEFAULT_INTERVAL_SECONDS = 5.0


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def scan_recent_files(
    project_dir: str | os.PathLike[str], since: float | None = None
) -> list[FileActivity]:
    """Files modified after ``since`` (epoch seconds), newest first.

    Hidden entries and build/vendor directories are skipped; the walk stops at
    ``MAX_SCAN_DEPTH`` levels or ``MAX_SCAN_FILES`` hits.
    """
    root = Path(project_dir)
    cutoff = since if since is not None else time.time() - DEFAULT_LOOKBACK_SECONDS
    found: list[tuple[float, str]] = []

    def scan(directory: Path, depth: int) -> None:
        if depth > MAX_SCAN_DEPTH or len(found) >= MAX_SCAN_FILES:
            return
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError:
            log.debug("Cannot list %s", directory, exc_info=True)
            return
        for entry in entries:
            if len(found) >= MAX_SCAN_FILES:
                return
            name = entry.name
            if name.startswith(".") or name in IGNORED_DIRS or name == STATE_DIR_NAME:
                continue
            try:
                if entry.is_dir(follow_symlinks=False):
                    scan(Path(entry.path), depth + 1)
                elif entry.is_file(follow_symlinks=False):
                    mtime = entry.stat(follow_symlinks=False).st_mtime
                    if mtime > cutoff:
                        found.append((mtime, Path(entry.path).relative_to(root).as_posix()))
            except OSError:
                log.debug("Cannot stat %s", entry.path, exc_info=True)

    scan(root, 0)
    found.sort(reverse=True)
    return [FileActivity(path=path, modified_at=_iso(mtime)) for mtime, path in found]


def detect_file_changes(project_dir: str | os.PathLike[str]) -> FileChanges | None:
    """Diff every tracked file against the stored snapshot and store the new one."""
    return replace_file_snapshot(project_dir, scan_recent_files(project_dir, since=0))


def has_files_changed_since_analysis(project_dir: str | os.PathLike[str]) -> bool:
    """True when no analysis was recorded or a file was modified after it."""
    analysed = store.parse_timestamp(load_tracker(project_dir).last_analysis_at)
    if analysed is None:
        return True
    return bool(scan_recent_files(project_dir, since=analysed.timestamp()))


@dataclass
class WatchStats:
    cycles: int = 0
    files_recorded: int = 0
    advances: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "cycles": self.cycles,
            "files_recorded": self.files_recorded,
            "advances": self.advances,
        }


def watch_once(
    project_dir: str | os.PathLike[str], since: float | None, stats: WatchStats
) -> float:
    """One polling cycle. Returns the cutoff for the next cycle."""
    started = time.time()
    files = scan_recent_files(project_dir, since)
    if files:
        result = record_file_activity(project_dir, files)
        if result.success:
            stats.files_recorded += len(files)
            log.debug("Recorded %d modified files (v%d)", len(files), result.version)
        update_inferred_phase(project_dir)
    transition = maybe_auto_advance(project_dir)
    if transition is not None and transition.success and transition.previous != transition.current:
        stats.advances += 1
        log.info(
            "Gates passing: advanced %s -> %s",
            transition.previous.label(),
            transition.current.label(),
        )
    stats.cycles += 1
    return started


def watch(
    project_dir: str | os.PathLike[str],
    interval: float = DEFAULT_INTERVAL_SECONDS,
    max_cycles: int | None = None,
    stop_event: threading.Event | None = None,
) -> WatchStats:
    """Poll until ``stop_event`` is set or ``max_cycles`` cycles have run."""
    stop = stop_event or threading.Event()
    stats = WatchStats()
    since: float | None = None
    log.info("Watching %s every %.1fs", project_dir, interval)
    while not stop.is_set():
        since = watch_once(project_dir, since, stats)
        if max_cycles is not None and stats.cycles >= max_cycles:
            break
        stop.wait(interval)
    log.info("Watcher stopped after %d cycles", stats.cycles)
    return stats


def run_forever(project_dir: str | os.PathLike[str], interval: float) -> WatchStats:
    """Run the watcher until SIGTERM/SIGINT."""
    stop = threading.Event()

    def on_signal(signum: int, frame: object) -> None:
        log.info("Signal received, shutting down")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, on_signal)
    return watch(project_dir, interval, stop_event=stop)
