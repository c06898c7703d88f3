"""Lifecycle state machine built on the phase document.

Transitions are externally driven (CLI, MCP tools, the watcher). Each one
appends a history entry for the position being left and refreshes the
tracker's progress stamps, which feed stuck detection.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from midas import store
from midas.config import load_settings
from midas.documents import (
    PHASE_DOCUMENT,
    HistoryEntry,
    HotfixState,
    PhaseState,
    new_id,
)
from midas.phases import (
    BUILD,
    GROW,
    IDLE,
    PHASE_STEPS,
    PLAN,
    SHIP,
    Phase,
    next_phase,
    parse_phase,
    prev_phase,
    progress_percent,
)
from midas.tracker import gates_status, note_phase_entered

log = logging.getLogger(__name__)

# Auto-advance only moves out of these steps, and only when every gate passes.
AUTO_ADVANCE_STEPS = frozenset({Phase(BUILD, "IMPLEMENT"), Phase(BUILD, "TEST")})

STEP_ACTIONS: dict[str, dict[str, str]] = {
    PLAN: {
        "IDEA": "Define the core idea: what problem, who for, why now?",
        "RESEARCH": "Scan the landscape: what exists, what works, what fails?",
        "BRAINLIFT": "Document your edge: what do you know that the AI doesn't?",
        "PRD": "Define requirements: goals, non-goals, user stories.",
        "GAMEPLAN": "Plan the build: stack, phases, tasks, risks.",
    },
    BUILD: {
        "RULES": "Read the project rules and conventions.",
        "INDEX": "Index the codebase: architecture, folders, key files.",
        "READ": "Read the implementation files the current task touches.",
        "RESEARCH": "Look up documentation, APIs and examples.",
        "IMPLEMENT": "Write a failing test, then the code that passes it.",
        "TEST": "Run the full suite, fix failures, add edge cases.",
        "DEBUG": "Research, add logs, and write a minimal reproduction.",
    },
    SHIP: {
        "REVIEW": "Review the code: security, correctness, performance.",
        "DEPLOY": "Deploy through CI/CD with environment config and rollback.",
        "MONITOR": "Watch logs, alerts, health checks and metrics.",
    },
    GROW: {
        "DONE": "Shipped. Announce it, gather feedback, iterate.",
    },
}


@dataclass(frozen=True)
class PhaseTransition:
    """Result of a transition attempt."""

    success: bool
    previous: Phase
    current: Phase
    version: int
    error: str | None = None
    progress: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "progress", progress_percent(self.current))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "previous": self.previous.to_dict(),
            "current": self.current.to_dict(),
            "progress": self.progress,
            "version": self.version,
            "error": self.error,
        }


def _phase_path(project_dir: str | os.PathLike[str]) -> Path:
    return store.document_path(project_dir, PHASE_DOCUMENT)


def load_phase_document(project_dir: str | os.PathLike[str]) -> store.Document[PhaseState]:
    return store.get(_phase_path(project_dir), PHASE_DOCUMENT)


def load_phase_state(project_dir: str | os.PathLike[str]) -> PhaseState:
    return load_phase_document(project_dir).payload


def _duration_ms(entered_at: str, exited_at: str) -> int | None:
    start = store.parse_timestamp(entered_at)
    end = store.parse_timestamp(exited_at)
    if start is None or end is None:
        return None
    return max(0, int((end - start).total_seconds() * 1000))


def _trim_history(history: list[HistoryEntry], limit: int) -> list[HistoryEntry]:
    if limit <= 0 or len(history) <= limit:
        return history
    return history[len(history) - limit :]


def _transition(
    project_dir: str | os.PathLike[str], choose: Callable[[PhaseState], Phase]
) -> PhaseTransition:
    """Commit a transition chosen from the current position by ``choose``."""
    history_limit = load_settings(project_dir).history_limit
    now = store.utcnow()
    seen: dict[str, Phase] = {}

    def mutate(state: PhaseState) -> PhaseState:
        previous = state.current
        target = choose(state)
        seen["previous"] = previous
        seen["current"] = target
        entered_at = state.entered_at or state.started_at or now
        state.history.append(
            HistoryEntry(
                phase=previous,
                entered_at=entered_at,
                exited_at=now,
                duration_ms=_duration_ms(entered_at, now),
                id=new_id("hist"),
            )
        )
        state.history = _trim_history(state.history, history_limit)
        state.current = target
        state.entered_at = now
        if state.started_at is None and target.phase != IDLE:
            state.started_at = now
        return state

    result = store.put(_phase_path(project_dir), PHASE_DOCUMENT, mutate)
    if not result.success:
        current = load_phase_state(project_dir).current
        return PhaseTransition(False, current, current, result.version, error=result.error)

    note_phase_entered(project_dir, now)
    log.info(
        "Phase %s -> %s (v%d)",
        seen["previous"].label(),
        seen["current"].label(),
        result.version,
    )
    return PhaseTransition(True, seen["previous"], seen["current"], result.version)


def set_phase(project_dir: str | os.PathLike[str], phase: Phase) -> PhaseTransition:
    """Move to an explicit lifecycle position."""
    return _transition(project_dir, lambda _state: phase)


def set_phase_by_name(
    project_dir: str | os.PathLike[str], phase: str, step: str | None = None
) -> PhaseTransition:
    """Validate names and move there. Raises ``ValueError`` for unknown names."""
    return set_phase(project_dir, parse_phase(phase, step))


def advance_phase(project_dir: str | os.PathLike[str]) -> PhaseTransition:
    return _transition(project_dir, lambda state: next_phase(state.current))


def rewind_phase(project_dir: str | os.PathLike[str]) -> PhaseTransition:
    return _transition(project_dir, lambda state: prev_phase(state.current))


def maybe_auto_advance(project_dir: str | os.PathLike[str]) -> PhaseTransition | None:
    """Advance one step out of BUILD:IMPLEMENT/TEST when all gates pass.

    Returns None when no transition was attempted.
    """
    if not gates_status(project_dir).all_pass:
        return None
    current = load_phase_state(project_dir).current
    if current not in AUTO_ADVANCE_STEPS:
        return None

    def choose(state: PhaseState) -> Phase:
        # Another process may have moved on since the check above.
        if state.current in AUTO_ADVANCE_STEPS:
            return next_phase(state.current)
        return state.current

    return _transition(project_dir, choose)


def start_hotfix(project_dir: str | os.PathLike[str], description: str) -> store.WriteResult:
    """Enter hotfix mode, remembering the position to return to."""
    now = store.utcnow()

    def mutate(state: PhaseState) -> PhaseState:
        if not state.hotfix.active:
            state.hotfix = HotfixState(
                active=True,
                description=description,
                previous=state.current,
                started_at=now,
            )
        return state

    return store.put(_phase_path(project_dir), PHASE_DOCUMENT, mutate)


def end_hotfix(project_dir: str | os.PathLike[str]) -> PhaseTransition | None:
    """Leave hotfix mode and restore the interrupted position.

    Returns None when no hotfix was active.
    """
    state = load_phase_state(project_dir)
    if not state.hotfix.active:
        return None
    restore = state.hotfix.previous

    def choose(current: PhaseState) -> Phase:
        current.hotfix = HotfixState()
        return restore or current.current

    return _transition(project_dir, choose)


def set_doc_pointer(
    project_dir: str | os.PathLike[str], kind: str, path: str
) -> store.WriteResult:
    """Record where a planning document (brainlift, prd, gameplan) lives."""

    def mutate(state: PhaseState) -> PhaseState:
        state.docs[kind] = path
        return state

    return store.put(_phase_path(project_dir), PHASE_DOCUMENT, mutate)


def phase_guidance(phase: Phase) -> dict[str, Any]:
    """Next action for a lifecycle position."""
    if phase.phase == IDLE or phase.step is None:
        return {
            "phase": phase.to_dict(),
            "next_steps": ["Start planning: midas phase set PLAN"],
            "progress": 0,
        }
    action = STEP_ACTIONS.get(phase.phase, {}).get(phase.step, "Continue.")
    steps = PHASE_STEPS[phase.phase]
    return {
        "phase": phase.to_dict(),
        "next_steps": [action],
        "step_number": steps.index(phase.step) + 1,
        "steps_in_phase": len(steps),
        "progress": progress_percent(phase),
    }
