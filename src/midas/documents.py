"""Typed shapes of the documents persisted under ``.midas/``.

Three documents exist, each registered as a ``DocumentType``:

- ``PHASE_DOCUMENT`` (``state.json``): current lifecycle position and the
  append-only transition history.
- ``TRACKER_DOCUMENT`` (``tracker.json``): bounded activity collections,
  error memory, suggestion history, gate results and progress stamps.
- ``CHECKS_DOCUMENT`` (``checks.json``): check key to status mapping.

Decoders are total. A field that fails validation falls back to its default
and an invalid collection entry is dropped, so a partially damaged document
still yields everything that can be trusted. Defaults carry no wall-clock
values, so two default reads compare equal.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from midas.merge import merge_mapping, newer_by, pick, union_by_key
from midas.paths import CHECKS_FILE, PHASE_FILE, TRACKER_FILE
from midas.phases import IDLE_PHASE, Phase, decode_phase
from midas.store import DocumentType

RECENT_FILES_CAP = 50
TOOL_CALLS_CAP = 50
ERROR_MEMORY_CAP = 50
SUGGESTION_HISTORY_CAP = 20
FILE_SNAPSHOT_CAP = 500

CHECK_STATUSES = ("pending", "completed", "skipped")
TASK_STAGES = ("plan", "implement", "verify", "reflect")
GATE_NAMES = ("compiles", "tests", "lints")


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def error_id(message: str, file: str | None) -> str:
    """Stable identity of an error: the same message in the same file."""
    digest = hashlib.sha1(f"{message}\0{file or ''}".encode()).hexdigest()
    return f"err-{digest[:12]}"


# -- field validators --


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _without_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


# ---------------------------------------------------------------------------
# Phase state
# ---------------------------------------------------------------------------


@dataclass
class HistoryEntry:
    """One completed stay in a lifecycle position."""

    phase: Phase
    entered_at: str
    exited_at: str | None = None
    duration_ms: int | None = None
    id: str = ""

    @property
    def key(self) -> str:
        if self.id:
            return self.id
        return f"{self.phase.label()}@{self.entered_at}"

    @property
    def stamp(self) -> str:
        return self.exited_at or self.entered_at

    def to_dict(self) -> dict[str, Any]:
        return _without_none(
            {
                "id": self.id or None,
                **self.phase.to_dict(),
                "entered_at": self.entered_at,
                "exited_at": self.exited_at,
                "duration_ms": self.duration_ms,
            }
        )


@dataclass
class HotfixState:
    active: bool = False
    description: str | None = None
    previous: Phase | None = None
    started_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _without_none(
            {
                "active": self.active,
                "description": self.description,
                "previous": self.previous.to_dict() if self.previous else None,
                "started_at": self.started_at,
            }
        )


@dataclass
class PhaseState:
    current: Phase = IDLE_PHASE
    entered_at: str | None = None
    started_at: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)
    docs: dict[str, str] = field(default_factory=dict)
    hotfix: HotfixState = field(default_factory=HotfixState)


def _decode_history_entry(raw: Any) -> HistoryEntry | None:
    if not isinstance(raw, dict):
        return None
    phase = decode_phase(raw)
    entered_at = _str(raw.get("entered_at"))
    if phase is None or entered_at is None:
        return None
    return HistoryEntry(
        phase=phase,
        entered_at=entered_at,
        exited_at=_str(raw.get("exited_at")),
        duration_ms=_int(raw.get("duration_ms")),
        id=_str(raw.get("id")) or "",
    )


def _decode_hotfix(raw: Any) -> HotfixState:
    data = _dict(raw)
    return HotfixState(
        active=_bool(data.get("active")) or False,
        description=_str(data.get("description")),
        previous=decode_phase(data.get("previous")),
        started_at=_str(data.get("started_at")),
    )


def decode_phase_state(payload: dict[str, Any]) -> PhaseState:
    history = [_decode_history_entry(raw) for raw in _list(payload.get("history"))]
    return PhaseState(
        current=decode_phase(payload.get("current")) or IDLE_PHASE,
        entered_at=_str(payload.get("entered_at")),
        started_at=_str(payload.get("started_at")),
        history=[entry for entry in history if entry is not None],
        docs={k: v for k, v in _dict(payload.get("docs")).items() if isinstance(v, str)},
        hotfix=_decode_hotfix(payload.get("hotfix")),
    )


def encode_phase_state(state: PhaseState) -> dict[str, Any]:
    return {
        "current": state.current.to_dict(),
        "entered_at": state.entered_at,
        "started_at": state.started_at,
        "history": [entry.to_dict() for entry in state.history],
        "docs": dict(state.docs),
        "hotfix": state.hotfix.to_dict(),
    }


def merge_phase_state(local: PhaseState, remote: PhaseState, base: PhaseState) -> PhaseState:
    current, entered_at = pick(
        (local.current, local.entered_at),
        (remote.current, remote.entered_at),
        (base.current, base.entered_at),
    )
    return PhaseState(
        current=current,
        entered_at=entered_at,
        started_at=pick(local.started_at, remote.started_at, base.started_at),
        history=union_by_key(
            local.history,
            remote.history,
            key=lambda entry: entry.key,
            order=lambda entry: entry.stamp,
            newest_first=False,
        ),
        docs=merge_mapping(local.docs, remote.docs, base.docs),
        hotfix=pick(local.hotfix, remote.hotfix, base.hotfix),
    )


# ---------------------------------------------------------------------------
# Tracker state
# ---------------------------------------------------------------------------


@dataclass
class FileActivity:
    path: str
    modified_at: str


@dataclass
class ToolCall:
    id: str
    tool: str
    at: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class FixAttempt:
    approach: str
    at: str
    worked: bool


@dataclass
class ErrorEntry:
    """Error memory: one distinct error and what has been tried against it."""

    id: str
    message: str
    first_seen: str
    last_seen: str
    file: str | None = None
    line: int | None = None
    fix_attempts: list[FixAttempt] = field(default_factory=list)
    resolved: bool = False
    updated_at: str = ""

    @property
    def failed_attempts(self) -> int:
        return sum(1 for attempt in self.fix_attempts if not attempt.worked)


@dataclass
class SuggestionEntry:
    """A suggested next prompt and whether the developer took it.

    ``accepted`` is None until an outcome is recorded.
    """

    id: str
    suggestion: str
    at: str
    accepted: bool | None = None
    user_prompt: str | None = None
    rejection_reason: str | None = None
    updated_at: str = ""


@dataclass
class GateResult:
    passed: bool | None = None
    checked_at: str | None = None
    detail: str | None = None


@dataclass
class Gates:
    compiles: GateResult = field(default_factory=GateResult)
    tests: GateResult = field(default_factory=GateResult)
    lints: GateResult = field(default_factory=GateResult)


@dataclass
class TaskFocus:
    description: str
    started_at: str
    related_files: list[str] = field(default_factory=list)
    stage: str = "plan"
    attempts: int = 0


@dataclass
class TrackerState:
    recent_files: list[FileActivity] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    errors: list[ErrorEntry] = field(default_factory=list)
    suggestions: list[SuggestionEntry] = field(default_factory=list)
    gates: Gates = field(default_factory=Gates)
    current_task: TaskFocus | None = None
    phase_entered_at: str | None = None
    last_progress_at: str | None = None
    inferred_phase: Phase = IDLE_PHASE
    confidence: int = 0
    file_snapshot: list[FileActivity] = field(default_factory=list)
    last_analysis_at: str | None = None


def _decode_file_activity(raw: Any) -> FileActivity | None:
    data = _dict(raw)
    path = _str(data.get("path"))
    modified_at = _str(data.get("modified_at"))
    if not path or modified_at is None:
        return None
    return FileActivity(path=path, modified_at=modified_at)


def _decode_tool_call(raw: Any) -> ToolCall | None:
    data = _dict(raw)
    call_id = _str(data.get("id"))
    tool = _str(data.get("tool"))
    at = _str(data.get("at"))
    if not call_id or not tool or at is None:
        return None
    return ToolCall(id=call_id, tool=tool, at=at, args=_dict(data.get("args")))


def _decode_fix_attempt(raw: Any) -> FixAttempt | None:
    data = _dict(raw)
    approach = _str(data.get("approach"))
    at = _str(data.get("at"))
    worked = _bool(data.get("worked"))
    if approach is None or at is None or worked is None:
        return None
    return FixAttempt(approach=approach, at=at, worked=worked)


def _decode_error_entry(raw: Any) -> ErrorEntry | None:
    data = _dict(raw)
    entry_id = _str(data.get("id"))
    message = _str(data.get("message"))
    first_seen = _str(data.get("first_seen"))
    if not entry_id or message is None or first_seen is None:
        return None
    last_seen = _str(data.get("last_seen")) or first_seen
    attempts = [_decode_fix_attempt(item) for item in _list(data.get("fix_attempts"))]
    return ErrorEntry(
        id=entry_id,
        message=message,
        first_seen=first_seen,
        last_seen=last_seen,
        file=_str(data.get("file")),
        line=_int(data.get("line")),
        fix_attempts=[a for a in attempts if a is not None],
        resolved=_bool(data.get("resolved")) or False,
        updated_at=_str(data.get("updated_at")) or last_seen,
    )


def _decode_suggestion(raw: Any) -> SuggestionEntry | None:
    data = _dict(raw)
    entry_id = _str(data.get("id"))
    suggestion = _str(data.get("suggestion"))
    at = _str(data.get("at"))
    if not entry_id or suggestion is None or at is None:
        return None
    return SuggestionEntry(
        id=entry_id,
        suggestion=suggestion,
        at=at,
        accepted=_bool(data.get("accepted")),
        user_prompt=_str(data.get("user_prompt")),
        rejection_reason=_str(data.get("rejection_reason")),
        updated_at=_str(data.get("updated_at")) or at,
    )


def _decode_gate(raw: Any) -> GateResult:
    data = _dict(raw)
    return GateResult(
        passed=_bool(data.get("passed")),
        checked_at=_str(data.get("checked_at")),
        detail=_str(data.get("detail")),
    )


def _decode_task_focus(raw: Any) -> TaskFocus | None:
    data = _dict(raw)
    description = _str(data.get("description"))
    started_at = _str(data.get("started_at"))
    if description is None or started_at is None:
        return None
    stage = _str(data.get("stage"))
    attempts = _int(data.get("attempts"))
    return TaskFocus(
        description=description,
        started_at=started_at,
        related_files=[f for f in _list(data.get("related_files")) if isinstance(f, str)],
        stage=stage if stage in TASK_STAGES else "plan",
        attempts=attempts if attempts is not None and attempts >= 0 else 0,
    )


def _decoded(items: list[Any], decoder: Any, cap: int) -> list[Any]:
    decoded = [decoder(item) for item in items]
    return [item for item in decoded if item is not None][:cap]


def decode_tracker_state(payload: dict[str, Any]) -> TrackerState:
    gates = _dict(payload.get("gates"))
    return TrackerState(
        recent_files=_decoded(
            _list(payload.get("recent_files")), _decode_file_activity, RECENT_FILES_CAP
        ),
        tool_calls=_decoded(_list(payload.get("tool_calls")), _decode_tool_call, TOOL_CALLS_CAP),
        errors=_decoded(_list(payload.get("errors")), _decode_error_entry, ERROR_MEMORY_CAP),
        suggestions=_decoded(
            _list(payload.get("suggestions")), _decode_suggestion, SUGGESTION_HISTORY_CAP
        ),
        gates=Gates(
            compiles=_decode_gate(gates.get("compiles")),
            tests=_decode_gate(gates.get("tests")),
            lints=_decode_gate(gates.get("lints")),
        ),
        current_task=_decode_task_focus(payload.get("current_task")),
        phase_entered_at=_str(payload.get("phase_entered_at")),
        last_progress_at=_str(payload.get("last_progress_at")),
        inferred_phase=decode_phase(payload.get("inferred_phase")) or IDLE_PHASE,
        confidence=min(max(_int(payload.get("confidence")) or 0, 0), 100),
        file_snapshot=_decoded(
            _list(payload.get("file_snapshot")), _decode_file_activity, FILE_SNAPSHOT_CAP
        ),
        last_analysis_at=_str(payload.get("last_analysis_at")),
    )


def _encode_gate(gate: GateResult) -> dict[str, Any]:
    return {"passed": gate.passed, "checked_at": gate.checked_at, "detail": gate.detail}


def encode_tracker_state(state: TrackerState) -> dict[str, Any]:
    task = state.current_task
    return {
        "recent_files": [
            {"path": f.path, "modified_at": f.modified_at} for f in state.recent_files
        ],
        "tool_calls": [
            {"id": c.id, "tool": c.tool, "at": c.at, "args": c.args} for c in state.tool_calls
        ],
        "errors": [
            {
                "id": e.id,
                "message": e.message,
                "file": e.file,
                "line": e.line,
                "first_seen": e.first_seen,
                "last_seen": e.last_seen,
                "updated_at": e.updated_at,
                "resolved": e.resolved,
                "fix_attempts": [
                    {"approach": a.approach, "at": a.at, "worked": a.worked}
                    for a in e.fix_attempts
                ],
            }
            for e in state.errors
        ],
        "suggestions": [
            {
                "id": s.id,
                "suggestion": s.suggestion,
                "at": s.at,
                "accepted": s.accepted,
                "user_prompt": s.user_prompt,
                "rejection_reason": s.rejection_reason,
                "updated_at": s.updated_at,
            }
            for s in state.suggestions
        ],
        "gates": {name: _encode_gate(getattr(state.gates, name)) for name in GATE_NAMES},
        "current_task": None
        if task is None
        else {
            "description": task.description,
            "started_at": task.started_at,
            "related_files": list(task.related_files),
            "stage": task.stage,
            "attempts": task.attempts,
        },
        "phase_entered_at": state.phase_entered_at,
        "last_progress_at": state.last_progress_at,
        "inferred_phase": state.inferred_phase.to_dict(),
        "confidence": state.confidence,
        "file_snapshot": [
            {"path": f.path, "modified_at": f.modified_at} for f in state.file_snapshot
        ],
        "last_analysis_at": state.last_analysis_at,
    }


def _merge_error_entry(local: ErrorEntry, remote: ErrorEntry) -> ErrorEntry:
    """Same error touched by two writers: newest scalars, every fix attempt."""
    winner = newer_by(lambda e: e.updated_at)(local, remote)
    attempts = union_by_key(
        local.fix_attempts,
        remote.fix_attempts,
        key=lambda a: (a.at, a.approach),
        order=lambda a: a.at,
        newest_first=False,
    )
    return replace(
        winner,
        first_seen=min(local.first_seen, remote.first_seen),
        last_seen=max(local.last_seen, remote.last_seen),
        fix_attempts=attempts,
    )


def merge_tracker_state(
    local: TrackerState, remote: TrackerState, base: TrackerState
) -> TrackerState:
    inferred_phase, confidence = pick(
        (local.inferred_phase, local.confidence),
        (remote.inferred_phase, remote.confidence),
        (base.inferred_phase, base.confidence),
    )
    return TrackerState(
        recent_files=union_by_key(
            local.recent_files,
            remote.recent_files,
            key=lambda f: f.path,
            order=lambda f: f.modified_at,
            newest_first=True,
            limit=RECENT_FILES_CAP,
            resolve=newer_by(lambda f: f.modified_at),
        ),
        tool_calls=union_by_key(
            local.tool_calls,
            remote.tool_calls,
            key=lambda c: c.id,
            order=lambda c: c.at,
            newest_first=True,
            limit=TOOL_CALLS_CAP,
        ),
        errors=union_by_key(
            local.errors,
            remote.errors,
            key=lambda e: e.id,
            order=lambda e: e.last_seen,
            newest_first=True,
            limit=ERROR_MEMORY_CAP,
            resolve=_merge_error_entry,
        ),
        suggestions=union_by_key(
            local.suggestions,
            remote.suggestions,
            key=lambda s: s.id,
            order=lambda s: s.at,
            newest_first=True,
            limit=SUGGESTION_HISTORY_CAP,
            resolve=newer_by(lambda s: s.updated_at),
        ),
        gates=Gates(
            compiles=pick(local.gates.compiles, remote.gates.compiles, base.gates.compiles),
            tests=pick(local.gates.tests, remote.gates.tests, base.gates.tests),
            lints=pick(local.gates.lints, remote.gates.lints, base.gates.lints),
        ),
        current_task=pick(local.current_task, remote.current_task, base.current_task),
        phase_entered_at=pick(
            local.phase_entered_at, remote.phase_entered_at, base.phase_entered_at
        ),
        last_progress_at=pick(
            local.last_progress_at, remote.last_progress_at, base.last_progress_at
        ),
        inferred_phase=inferred_phase,
        confidence=confidence,
        file_snapshot=pick(local.file_snapshot, remote.file_snapshot, base.file_snapshot),
        last_analysis_at=pick(
            local.last_analysis_at, remote.last_analysis_at, base.last_analysis_at
        ),
    )


# ---------------------------------------------------------------------------
# Check status map
# ---------------------------------------------------------------------------


@dataclass
class CheckStatus:
    status: str
    updated_at: str
    skip_reason: str | None = None


CheckStatusMap = dict[str, CheckStatus]


def decode_check_statuses(payload: dict[str, Any]) -> CheckStatusMap:
    checks: CheckStatusMap = {}
    for key, raw in payload.items():
        data = _dict(raw)
        status = _str(data.get("status"))
        updated_at = _str(data.get("updated_at"))
        if status not in CHECK_STATUSES or updated_at is None:
            continue
        checks[key] = CheckStatus(
            status=status,
            updated_at=updated_at,
            skip_reason=_str(data.get("skip_reason")),
        )
    return checks


def encode_check_statuses(checks: CheckStatusMap) -> dict[str, Any]:
    return {
        key: _without_none(
            {"status": c.status, "updated_at": c.updated_at, "skip_reason": c.skip_reason}
        )
        for key, c in checks.items()
    }


def merge_check_statuses(
    local: CheckStatusMap, remote: CheckStatusMap, base: CheckStatusMap
) -> CheckStatusMap:
    return merge_mapping(local, remote, base, resolve=newer_by(lambda c: c.updated_at))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PHASE_DOCUMENT: DocumentType[PhaseState] = DocumentType(
    name="phase",
    filename=PHASE_FILE,
    default=PhaseState,
    decode=decode_phase_state,
    encode=encode_phase_state,
    merge=merge_phase_state,
)

TRACKER_DOCUMENT: DocumentType[TrackerState] = DocumentType(
    name="tracker",
    filename=TRACKER_FILE,
    default=TrackerState,
    decode=decode_tracker_state,
    encode=encode_tracker_state,
    merge=merge_tracker_state,
)

CHECKS_DOCUMENT: DocumentType[CheckStatusMap] = DocumentType(
    name="checks",
    filename=CHECKS_FILE,
    default=dict,
    decode=decode_check_statuses,
    encode=encode_check_statuses,
    merge=merge_check_statuses,
)

DOCUMENT_TYPES = (PHASE_DOCUMENT, TRACKER_DOCUMENT, CHECKS_DOCUMENT)
