"""Activity tracking on top of the tracker document.

Everything here is a thin read-modify-write wrapper around ``store.put``:
tool calls and file touches, error memory with fix attempts, suggestion
history, verification gates, task focus, and the progress stamps used for
stuck detection. Outputs of external analyzers (AI completions, doc
discovery) are folded in through these functions and never written directly.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from midas import store
from midas.config import load_settings
from midas.documents import (
    ERROR_MEMORY_CAP,
    FILE_SNAPSHOT_CAP,
    GATE_NAMES,
    RECENT_FILES_CAP,
    SUGGESTION_HISTORY_CAP,
    TASK_STAGES,
    TOOL_CALLS_CAP,
    TRACKER_DOCUMENT,
    ErrorEntry,
    FileActivity,
    FixAttempt,
    GateResult,
    SuggestionEntry,
    TaskFocus,
    ToolCall,
    TrackerState,
    error_id,
    new_id,
)
from midas.phases import BUILD, IDLE_PHASE, PLAN, SHIP, Phase

log = logging.getLogger(__name__)

MAX_GATE_DETAIL = 500
ACCEPTANCE_WINDOW = 10

_GATE_LABELS = {"compiles": "build", "tests": "tests", "lints": "lint"}

# Gate argument meaning "leave the stored result alone".
UNCHANGED: Any = object()


def _tracker_path(project_dir: str | os.PathLike[str]) -> Path:
    return store.document_path(project_dir, TRACKER_DOCUMENT)


def load_tracker_document(project_dir: str | os.PathLike[str]) -> store.Document[TrackerState]:
    return store.get(_tracker_path(project_dir), TRACKER_DOCUMENT)


def load_tracker(project_dir: str | os.PathLike[str]) -> TrackerState:
    return load_tracker_document(project_dir).payload


def update_tracker(
    project_dir: str | os.PathLike[str],
    mutate: Callable[[TrackerState], TrackerState],
    expected_version: int | None = None,
) -> store.WriteResult:
    """Commit a tracker change, keeping every bounded collection within its cap."""

    def bounded(state: TrackerState) -> TrackerState:
        state = mutate(state)
        state.recent_files = _newest(state.recent_files, lambda f: f.modified_at, RECENT_FILES_CAP)
        state.tool_calls = _newest(state.tool_calls, lambda c: c.at, TOOL_CALLS_CAP)
        state.errors = _newest(state.errors, lambda e: e.last_seen, ERROR_MEMORY_CAP)
        state.suggestions = _newest(state.suggestions, lambda s: s.at, SUGGESTION_HISTORY_CAP)
        return state

    result = store.put(_tracker_path(project_dir), TRACKER_DOCUMENT, bounded, expected_version)
    if not result.success:
        log.warning("Tracker update for %s failed: %s", project_dir, result.error)
    return result


def _newest(items: list[Any], stamp: Callable[[Any], str], cap: int) -> list[Any]:
    """Newest first, oldest evicted past ``cap``."""
    return sorted(items, key=stamp, reverse=True)[:cap]


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


def record_tool_call(
    project_dir: str | os.PathLike[str], tool: str, args: dict[str, Any] | None = None
) -> store.WriteResult:
    call = ToolCall(id=new_id("call"), tool=tool, at=store.utcnow(), args=dict(args or {}))

    def mutate(state: TrackerState) -> TrackerState:
        state.tool_calls.insert(0, call)
        if tool in TOOL_PHASES:
            state.inferred_phase, state.confidence = TOOL_PHASES[tool]
        return state

    return update_tracker(project_dir, mutate)


def record_file_activity(
    project_dir: str | os.PathLike[str], files: Iterable[FileActivity]
) -> store.WriteResult:
    """Fold file touches into ``recent_files``, one entry per path."""
    touched = {f.path: f for f in files}

    def mutate(state: TrackerState) -> TrackerState:
        merged = {f.path: f for f in state.recent_files}
        for path, activity in touched.items():
            existing = merged.get(path)
            if existing is None or activity.modified_at > existing.modified_at:
                merged[path] = activity
        state.recent_files = list(merged.values())
        return state

    return update_tracker(project_dir, mutate)


def mark_progress(project_dir: str | os.PathLike[str]) -> store.WriteResult:
    """Note that meaningful progress happened now."""
    now = store.utcnow()

    def mutate(state: TrackerState) -> TrackerState:
        state.last_progress_at = now
        return state

    return update_tracker(project_dir, mutate)


def note_phase_entered(project_dir: str | os.PathLike[str], at: str) -> store.WriteResult:
    def mutate(state: TrackerState) -> TrackerState:
        state.phase_entered_at = at
        state.last_progress_at = at
        return state

    return update_tracker(project_dir, mutate)


# ---------------------------------------------------------------------------
# Error memory
# ---------------------------------------------------------------------------


def record_error(
    project_dir: str | os.PathLike[str],
    message: str,
    file: str | None = None,
    line: int | None = None,
) -> ErrorEntry | None:
    """Remember an error. Repeats of the same message in the same file update
    the existing entry (reopening it if it had been resolved).

    Returns the stored entry, or None if the write failed.
    """
    entry_id = error_id(message, file)
    now = store.utcnow()
    stored: dict[str, ErrorEntry] = {}

    def mutate(state: TrackerState) -> TrackerState:
        existing = next((e for e in state.errors if e.id == entry_id), None)
        if existing is None:
            existing = ErrorEntry(
                id=entry_id,
                message=message,
                file=file,
                line=line,
                first_seen=now,
                last_seen=now,
                updated_at=now,
            )
            state.errors.insert(0, existing)
        else:
            existing.last_seen = now
            existing.updated_at = now
            existing.resolved = False
            if line is not None:
                existing.line = line
        stored["entry"] = existing
        return state

    result = update_tracker(project_dir, mutate)
    return stored["entry"] if result.success else None


def record_fix_attempt(
    project_dir: str | os.PathLike[str], entry_id: str, approach: str, worked: bool
) -> bool:
    """Append a fix attempt to an error. False if the error is unknown or the write failed."""
    if not any(e.id == entry_id for e in load_tracker(project_dir).errors):
        return False
    now = store.utcnow()

    def mutate(state: TrackerState) -> TrackerState:
        for entry in state.errors:
            if entry.id == entry_id:
                entry.fix_attempts.append(FixAttempt(approach=approach, at=now, worked=worked))
                entry.updated_at = now
                if worked:
                    entry.resolved = True
                    state.last_progress_at = now
        return state

    return update_tracker(project_dir, mutate).success


def unresolved_errors(project_dir: str | os.PathLike[str]) -> list[ErrorEntry]:
    return [e for e in load_tracker(project_dir).errors if not e.resolved]


def stuck_errors(
    project_dir: str | os.PathLike[str], min_attempts: int | None = None
) -> list[ErrorEntry]:
    """Unresolved errors with repeated failed fix attempts, most attempted first."""
    if min_attempts is None:
        min_attempts = load_settings(project_dir).stuck_fix_attempts
    stuck = [e for e in unresolved_errors(project_dir) if e.failed_attempts >= min_attempts]
    return sorted(stuck, key=lambda e: e.failed_attempts, reverse=True)


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


def record_suggestion(
    project_dir: str | os.PathLike[str], suggestion: str
) -> SuggestionEntry | None:
    now = store.utcnow()
    entry = SuggestionEntry(id=new_id("sug"), suggestion=suggestion, at=now, updated_at=now)

    def mutate(state: TrackerState) -> TrackerState:
        state.suggestions.insert(0, entry)
        return state

    return entry if update_tracker(project_dir, mutate).success else None


def record_suggestion_outcome(
    project_dir: str | os.PathLike[str],
    accepted: bool,
    *,
    suggestion_id: str | None = None,
    user_prompt: str | None = None,
    rejection_reason: str | None = None,
) -> bool:
    """Record whether a suggestion was taken; defaults to the newest one."""
    current = load_tracker(project_dir).suggestions
    if not current:
        return False
    target_id = suggestion_id or current[0].id
    if not any(s.id == target_id for s in current):
        return False
    now = store.utcnow()

    def mutate(state: TrackerState) -> TrackerState:
        for entry in state.suggestions:
            if entry.id == target_id:
                entry.accepted = accepted
                entry.updated_at = now
                if user_prompt:
                    entry.user_prompt = user_prompt
                if rejection_reason:
                    entry.rejection_reason = rejection_reason
        return state

    return update_tracker(project_dir, mutate).success


def acceptance_rate(suggestions: list[SuggestionEntry]) -> int:
    """Percentage of decided suggestions accepted among the newest ``ACCEPTANCE_WINDOW``."""
    recent = [s for s in suggestions[:ACCEPTANCE_WINDOW] if s.accepted is not None]
    if not recent:
        return 0
    accepted = sum(1 for s in recent if s.accepted)
    return round(accepted * 100 / len(recent))


def suggestion_acceptance_rate(project_dir: str | os.PathLike[str]) -> int:
    return acceptance_rate(load_tracker(project_dir).suggestions)


# ---------------------------------------------------------------------------
# Verification gates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GatesStatus:
    all_pass: bool
    failing: list[str] = field(default_factory=list)
    unknown: list[str] = field(default_factory=list)
    stale: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "all_pass": self.all_pass,
            "failing": list(self.failing),
            "unknown": list(self.unknown),
            "stale": self.stale,
        }


def record_gate_results(
    project_dir: str | os.PathLike[str],
    *,
    compiles: Any = UNCHANGED,
    tests: Any = UNCHANGED,
    lints: Any = UNCHANGED,
    details: dict[str, str] | None = None,
) -> store.WriteResult:
    """Store the outcome of externally run build/test/lint checks.

    Each gate takes True, False or None (unknown: forget any earlier result).
    Gates left at ``UNCHANGED`` keep their stored result.
    """
    now = store.utcnow()
    outcomes = {"compiles": compiles, "tests": tests, "lints": lints}
    details = details or {}

    def mutate(state: TrackerState) -> TrackerState:
        newly_passing = False
        for name, passed in outcomes.items():
            if passed is UNCHANGED:
                continue
            previous = getattr(state.gates, name)
            if passed is None:
                setattr(state.gates, name, GateResult())
                continue
            detail = details.get(name)
            setattr(
                state.gates,
                name,
                GateResult(
                    passed=passed,
                    checked_at=now,
                    detail=detail[:MAX_GATE_DETAIL] if detail else None,
                ),
            )
            if passed and previous.passed is not True:
                newly_passing = True
        if newly_passing:
            state.last_progress_at = now
        return state

    return update_tracker(project_dir, mutate)


def gates_status(
    project_dir: str | os.PathLike[str], *, now: datetime | None = None
) -> GatesStatus:
    """Summarize gates. ``all_pass`` requires the build gate to have passed and
    no gate to be failing; unknown test/lint gates do not block.
    """
    gates = load_tracker(project_dir).gates
    stale_after = timedelta(minutes=load_settings(project_dir).gate_stale_minutes)
    now = now or datetime.now(UTC)

    failing: list[str] = []
    unknown: list[str] = []
    checked: list[datetime] = []
    for name in GATE_NAMES:
        gate: GateResult = getattr(gates, name)
        if gate.passed is False:
            failing.append(_GATE_LABELS[name])
        elif gate.passed is None:
            unknown.append(_GATE_LABELS[name])
        stamp = store.parse_timestamp(gate.checked_at)
        if stamp is not None:
            checked.append(stamp)

    stale = not checked or now - min(checked) > stale_after
    return GatesStatus(
        all_pass=not failing and gates.compiles.passed is True,
        failing=failing,
        unknown=unknown,
        stale=stale,
    )


# ---------------------------------------------------------------------------
# Task focus
# ---------------------------------------------------------------------------


def set_task_focus(
    project_dir: str | os.PathLike[str],
    description: str,
    related_files: list[str] | None = None,
) -> TaskFocus | None:
    task = TaskFocus(
        description=description,
        started_at=store.utcnow(),
        related_files=list(related_files or []),
    )

    def mutate(state: TrackerState) -> TrackerState:
        state.current_task = task
        return state

    return task if update_tracker(project_dir, mutate).success else None


def update_task_stage(project_dir: str | os.PathLike[str], stage: str) -> bool:
    """Move the focused task to a new stage; entering ``implement`` counts an attempt."""
    if stage not in TASK_STAGES:
        msg = f"Unknown task stage: {stage}. Supported: {', '.join(TASK_STAGES)}"
        raise ValueError(msg)
    if load_tracker(project_dir).current_task is None:
        return False

    def mutate(state: TrackerState) -> TrackerState:
        if state.current_task is not None:
            state.current_task.stage = stage
            if stage == "implement":
                state.current_task.attempts += 1
        return state

    return update_tracker(project_dir, mutate).success


def clear_task_focus(project_dir: str | os.PathLike[str]) -> store.WriteResult:
    def mutate(state: TrackerState) -> TrackerState:
        state.current_task = None
        return state

    return update_tracker(project_dir, mutate)


# ---------------------------------------------------------------------------
# Stuck detection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StuckStatus:
    stuck: bool
    reason: str | None = None
    since: str | None = None
    error: str | None = None
    time_in_phase_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stuck": self.stuck,
            "reason": self.reason,
            "since": self.since,
            "error": self.error,
            "time_in_phase_ms": self.time_in_phase_ms,
        }


def stuck_status(
    project_dir: str | os.PathLike[str], *, now: datetime | None = None
) -> StuckStatus:
    """Derive the stuck signal from elapsed time without progress and from
    errors with repeated failed fixes.
    """
    settings = load_settings(project_dir)
    tracker = load_tracker(project_dir)
    now = now or datetime.now(UTC)

    entered = store.parse_timestamp(tracker.phase_entered_at)
    time_in_phase_ms = max(0, int((now - entered).total_seconds() * 1000)) if entered else 0

    worst = next(
        iter(
            sorted(
                (
                    e
                    for e in tracker.errors
                    if not e.resolved and e.failed_attempts >= settings.stuck_fix_attempts
                ),
                key=lambda e: e.failed_attempts,
                reverse=True,
            )
        ),
        None,
    )
    error_text = worst.message[:200] if worst else None

    last_progress = store.parse_timestamp(tracker.last_progress_at)
    threshold = timedelta(hours=settings.stuck_after_hours)
    if last_progress is not None and now - last_progress > threshold:
        since = (last_progress + threshold).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        return StuckStatus(True, "no_progress", since, error_text, time_in_phase_ms)
    if worst is not None:
        return StuckStatus(True, "repeated_error", worst.last_seen, error_text, time_in_phase_ms)
    return StuckStatus(False, time_in_phase_ms=time_in_phase_ms)


# ---------------------------------------------------------------------------
# Phase inference and analysis stamps
# ---------------------------------------------------------------------------

# Confidence is a 0-100 score of how sure the inference is.
TOOL_PHASES: dict[str, tuple[Phase, int]] = {
    "midas_record_error": (Phase(BUILD, "DEBUG"), 80),
    "midas_record_fix": (Phase(BUILD, "DEBUG"), 80),
    "midas_focus": (Phase(BUILD, "IMPLEMENT"), 80),
    "midas_record_gates": (Phase(BUILD, "TEST"), 80),
    "midas_set_check": (Phase(SHIP, "REVIEW"), 80),
    "midas_checks": (Phase(SHIP, "REVIEW"), 80),
}

PLANNING_DOCS = ("brainlift.md", "prd.md", "gameplan.md")
_TEST_MARKERS = (".test.", ".spec.", "test_", "/tests/")
_SOURCE_MARKERS = ("src/", "lib/")


def infer_phase(project_dir: str | os.PathLike[str], state: TrackerState) -> tuple[Phase, int]:
    """Best guess of where the developer is, from planning docs and recent files."""
    docs = Path(project_dir) / "docs"
    if not all((docs / name).is_file() for name in PLANNING_DOCS):
        if not docs.is_dir() and not state.recent_files:
            return IDLE_PHASE, 90
        return Phase(PLAN, "BRAINLIFT"), 70

    paths = [f"/{f.path}" for f in state.recent_files]
    if any(marker in path for path in paths for marker in _TEST_MARKERS):
        return Phase(BUILD, "TEST"), 60
    if any(marker in path for path in paths for marker in _SOURCE_MARKERS):
        return Phase(BUILD, "IMPLEMENT"), 60
    if any(call.tool == "midas_set_check" for call in state.tool_calls[:5]):
        return Phase(SHIP, "REVIEW"), 75
    if paths:
        return Phase(BUILD, "IMPLEMENT"), 40
    return state.inferred_phase, state.confidence


def update_inferred_phase(project_dir: str | os.PathLike[str]) -> store.WriteResult:
    def mutate(state: TrackerState) -> TrackerState:
        state.inferred_phase, state.confidence = infer_phase(project_dir, state)
        return state

    return update_tracker(project_dir, mutate)


def mark_analysis_complete(project_dir: str | os.PathLike[str]) -> store.WriteResult:
    """Stamp the end of a project analysis; later file changes make it stale."""
    now = store.utcnow()

    def mutate(state: TrackerState) -> TrackerState:
        state.last_analysis_at = now
        return state

    return update_tracker(project_dir, mutate)


@dataclass(frozen=True)
class FileChanges:
    changed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.changed or self.added or self.deleted)

    def to_dict(self) -> dict[str, list[str]]:
        return {"changed": self.changed, "added": self.added, "deleted": self.deleted}


def replace_file_snapshot(
    project_dir: str | os.PathLike[str], files: Iterable[FileActivity]
) -> FileChanges | None:
    """Store a full listing of project files and diff it against the previous one.

    Returns None when the write failed.
    """
    current = {f.path: f for f in list(files)[:FILE_SNAPSHOT_CAP]}
    diff: dict[str, FileChanges] = {}

    def mutate(state: TrackerState) -> TrackerState:
        previous = {f.path: f for f in state.file_snapshot}
        diff["changes"] = FileChanges(
            changed=sorted(p for p, f in current.items() if p in previous and previous[p] != f),
            added=sorted(p for p in current if p not in previous),
            deleted=sorted(p for p in previous if p not in current),
        )
        state.file_snapshot = list(current.values())
        return state

    result = update_tracker(project_dir, mutate)
    return diff["changes"] if result.success else None


def activity_summary(project_dir: str | os.PathLike[str]) -> str:
    """One-line digest of recent files, the last tool used and gate state."""
    tracker = load_tracker(project_dir)
    parts: list[str] = []
    if tracker.recent_files:
        names = [f.path.rsplit("/", 1)[-1] for f in tracker.recent_files[:3]]
        parts.append(f"Files: {', '.join(names)}")
    if tracker.tool_calls:
        parts.append(f"Tool: {tracker.tool_calls[0].tool.removeprefix('midas_')}")
    gates = gates_status(project_dir)
    if gates.failing:
        parts.append(f"Failing: {', '.join(gates.failing)}")
    elif gates.all_pass:
        parts.append("Gates: all pass")
    return " | ".join(parts) or "No recent activity"
