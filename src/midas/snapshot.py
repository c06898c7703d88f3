"""Read-only dashboard snapshot.

``build_snapshot`` projects the persisted documents into the flat shape a
remote dashboard consumes. It only ever calls ``store.get``; building a
snapshot never writes.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from midas import store
from midas.checks import check_summary
from midas.documents import (
    CHECKS_DOCUMENT,
    PHASE_DOCUMENT,
    TRACKER_DOCUMENT,
)
from midas.phases import progress_percent
from midas.tracker import acceptance_rate, gates_status, stuck_status

SNAPSHOT_SCHEMA = "dashboard_snapshot_v1"
RECENT_EVENT_LIMIT = 20
UNRESOLVED_ERROR_LIMIT = 10

_GATE_SCHEMA = {"type": ["boolean", "null"]}

SNAPSHOT_JSON_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "required": [
        "schema",
        "project",
        "generated_at",
        "phase",
        "step",
        "progress",
        "history_count",
        "recent_events",
        "gates",
        "stuck",
        "checks",
        "errors",
        "suggestions",
        "versions",
    ],
    "properties": {
        "schema": {"const": SNAPSHOT_SCHEMA},
        "project": {"type": "string"},
        "generated_at": {"type": "string"},
        "phase": {"enum": ["IDLE", "PLAN", "BUILD", "SHIP", "GROW"]},
        "step": {"type": ["string", "null"]},
        "progress": {"type": "integer", "minimum": 0, "maximum": 100},
        "history_count": {"type": "integer", "minimum": 0},
        "recent_events": {
            "type": "array",
            "maxItems": RECENT_EVENT_LIMIT,
            "items": {
                "type": "object",
                "required": ["type", "at", "summary"],
                "properties": {
                    "type": {"enum": ["transition", "error", "suggestion", "tool_call"]},
                    "at": {"type": "string"},
                    "summary": {"type": "string"},
                },
            },
        },
        "gates": {
            "type": "object",
            "required": ["compiles", "tests", "lints", "all_pass", "stale"],
            "properties": {
                "compiles": _GATE_SCHEMA,
                "tests": _GATE_SCHEMA,
                "lints": _GATE_SCHEMA,
                "all_pass": {"type": "boolean"},
                "stale": {"type": "boolean"},
            },
        },
        "stuck": {
            "type": "object",
            "required": ["stuck", "reason", "since"],
            "properties": {
                "stuck": {"type": "boolean"},
                "reason": {"type": ["string", "null"]},
                "since": {"type": ["string", "null"]},
                "time_in_phase_ms": {"type": "integer", "minimum": 0},
            },
        },
        "checks": {
            "type": "object",
            "required": ["pending", "completed", "skipped"],
            "additionalProperties": {"type": "integer", "minimum": 0},
        },
        "errors": {
            "type": "object",
            "required": ["unresolved", "recent"],
            "properties": {
                "unresolved": {"type": "integer", "minimum": 0},
                "recent": {"type": "array", "maxItems": UNRESOLVED_ERROR_LIMIT},
            },
        },
        "suggestions": {
            "type": "object",
            "required": ["count", "acceptance_rate"],
            "properties": {
                "count": {"type": "integer", "minimum": 0},
                "acceptance_rate": {"type": "integer", "minimum": 0, "maximum": 100},
            },
        },
        "versions": {
            "type": "object",
            "additionalProperties": {"type": "integer", "minimum": 0},
        },
    },
}


def build_snapshot(
    project_dir: str | os.PathLike[str], *, now: datetime | None = None
) -> dict[str, Any]:
    """Assemble a dashboard snapshot from the current on-disk documents."""
    project = Path(project_dir)
    now = now or datetime.now(UTC)

    phase_doc = store.get(store.document_path(project, PHASE_DOCUMENT), PHASE_DOCUMENT)
    tracker_doc = store.get(store.document_path(project, TRACKER_DOCUMENT), TRACKER_DOCUMENT)
    state = phase_doc.payload
    tracker = tracker_doc.payload

    events: list[dict[str, Any]] = []
    for entry in state.history:
        events.append(
            {
                "type": "transition",
                "at": entry.stamp,
                "summary": f"left {entry.phase.label()}",
            }
        )
    for error in tracker.errors:
        events.append({"type": "error", "at": error.last_seen, "summary": error.message[:200]})
    for suggestion in tracker.suggestions:
        events.append(
            {"type": "suggestion", "at": suggestion.at, "summary": suggestion.suggestion[:200]}
        )
    for call in tracker.tool_calls:
        events.append({"type": "tool_call", "at": call.at, "summary": call.tool})
    events.sort(key=lambda event: event["at"], reverse=True)

    unresolved = [e for e in tracker.errors if not e.resolved]
    gates = gates_status(project, now=now)
    stuck = stuck_status(project, now=now)

    checks_doc = store.get(store.document_path(project, CHECKS_DOCUMENT), CHECKS_DOCUMENT)
    versions = {
        PHASE_DOCUMENT.name: phase_doc.version,
        TRACKER_DOCUMENT.name: tracker_doc.version,
        CHECKS_DOCUMENT.name: checks_doc.version,
    }

    return {
        "schema": SNAPSHOT_SCHEMA,
        "project": project.resolve().name,
        "generated_at": now.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        "phase": state.current.phase,
        "step": state.current.step,
        "progress": progress_percent(state.current),
        "history_count": len(state.history),
        "recent_events": events[:RECENT_EVENT_LIMIT],
        "gates": {
            "compiles": tracker.gates.compiles.passed,
            "tests": tracker.gates.tests.passed,
            "lints": tracker.gates.lints.passed,
            "all_pass": gates.all_pass,
            "stale": gates.stale,
        },
        "stuck": stuck.to_dict(),
        "checks": check_summary(project),
        "errors": {
            "unresolved": len(unresolved),
            "recent": [
                {
                    "id": e.id,
                    "message": e.message[:200],
                    "file": e.file,
                    "line": e.line,
                    "fix_attempts": len(e.fix_attempts),
                    "last_seen": e.last_seen,
                }
                for e in unresolved[:UNRESOLVED_ERROR_LIMIT]
            ],
        },
        "suggestions": {
            "count": len(tracker.suggestions),
            "acceptance_rate": acceptance_rate(tracker.suggestions),
        },
        "versions": versions,
    }
