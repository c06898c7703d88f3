"""Tests for the phase state machine."""

from __future__ import annotations

from pathlib import Path

import pytest

from midas.phase import (
    advance_phase,
    end_hotfix,
    load_phase_document,
    load_phase_state,
    maybe_auto_advance,
    phase_guidance,
    rewind_phase,
    set_doc_pointer,
    set_phase,
    set_phase_by_name,
    start_hotfix,
)
from midas.phases import IDLE_PHASE, Phase
from midas.tracker import load_tracker, record_gate_results


def test_first_transition_records_idle_in_history(project_dir: Path):
    transition = set_phase_by_name(project_dir, "PLAN")

    assert transition.success
    assert transition.previous == IDLE_PHASE
    assert transition.current == Phase("PLAN", "IDEA")
    assert transition.progress == 0
    assert transition.version == 1

    state = load_phase_state(project_dir)
    assert state.current == Phase("PLAN", "IDEA")
    assert state.started_at == state.entered_at
    assert len(state.history) == 1
    entry = state.history[0]
    assert entry.phase == IDLE_PHASE
    assert entry.id.startswith("hist-")
    assert entry.exited_at == state.entered_at


def test_transition_refreshes_tracker_progress_stamps(project_dir: Path):
    set_phase(project_dir, Phase("BUILD", "RULES"))
    state = load_phase_state(project_dir)
    tracker = load_tracker(project_dir)
    assert tracker.phase_entered_at == state.entered_at
    assert tracker.last_progress_at == state.entered_at


def test_history_entries_capture_duration(project_dir: Path):
    set_phase_by_name(project_dir, "PLAN")
    set_phase_by_name(project_dir, "PLAN", "RESEARCH")
    history = load_phase_state(project_dir).history
    assert [e.phase for e in history] == [IDLE_PHASE, Phase("PLAN", "IDEA")]
    assert history[1].duration_ms is not None
    assert history[1].duration_ms >= 0
    # started_at stays at the first transition.
    assert load_phase_state(project_dir).started_at == history[1].entered_at


def test_advance_and_rewind(project_dir: Path):
    assert advance_phase(project_dir).current == Phase("PLAN", "IDEA")
    assert advance_phase(project_dir).current == Phase("PLAN", "RESEARCH")
    assert rewind_phase(project_dir).current == Phase("PLAN", "IDEA")
    assert rewind_phase(project_dir).current == Phase("PLAN", "IDEA")

    doc = load_phase_document(project_dir)
    assert doc.version == 4
    assert len(doc.payload.history) == 4


def test_advance_past_grow_loops_to_plan(project_dir: Path):
    set_phase(project_dir, Phase("GROW", "DONE"))
    transition = advance_phase(project_dir)
    assert transition.previous == Phase("GROW", "DONE")
    assert transition.current == Phase("PLAN", "IDEA")


def test_unknown_phase_raises(project_dir: Path):
    with pytest.raises(ValueError):
        set_phase_by_name(project_dir, "LAUNCH")
    assert load_phase_document(project_dir).version == 0


def test_history_limit_from_config(project_dir: Path, write_config):
    write_config("[state]\nhistory_limit = 2\n")
    for _ in range(5):
        advance_phase(project_dir)
    history = load_phase_state(project_dir).history
    assert len(history) == 2
    assert [e.phase for e in history] == [Phase("PLAN", "BRAINLIFT"), Phase("PLAN", "PRD")]


def test_auto_advance_when_gates_pass(project_dir: Path):
    set_phase(project_dir, Phase("BUILD", "IMPLEMENT"))
    record_gate_results(project_dir, compiles=True, tests=True)

    transition = maybe_auto_advance(project_dir)
    assert transition is not None
    assert transition.current == Phase("BUILD", "TEST")

    transition = maybe_auto_advance(project_dir)
    assert transition is not None
    assert transition.current == Phase("BUILD", "DEBUG")

    # DEBUG is not an auto-advance step.
    assert maybe_auto_advance(project_dir) is None


def test_no_auto_advance_when_a_gate_fails(project_dir: Path):
    set_phase(project_dir, Phase("BUILD", "TEST"))
    record_gate_results(project_dir, compiles=True, tests=False)
    assert maybe_auto_advance(project_dir) is None
    assert load_phase_state(project_dir).current == Phase("BUILD", "TEST")


def test_no_auto_advance_outside_build(project_dir: Path):
    set_phase(project_dir, Phase("PLAN", "PRD"))
    record_gate_results(project_dir, compiles=True, tests=True, lints=True)
    assert maybe_auto_advance(project_dir) is None


def test_hotfix_restores_interrupted_phase(project_dir: Path):
    set_phase(project_dir, Phase("BUILD", "IMPLEMENT"))
    assert start_hotfix(project_dir, "login 500s in prod").success

    state = load_phase_state(project_dir)
    assert state.hotfix.active
    assert state.hotfix.previous == Phase("BUILD", "IMPLEMENT")

    set_phase(project_dir, Phase("BUILD", "DEBUG"))
    transition = end_hotfix(project_dir)
    assert transition is not None
    assert transition.current == Phase("BUILD", "IMPLEMENT")
    assert not load_phase_state(project_dir).hotfix.active


def test_end_hotfix_without_active_hotfix(project_dir: Path):
    assert end_hotfix(project_dir) is None


def test_doc_pointers(project_dir: Path):
    set_doc_pointer(project_dir, "prd", "docs/prd.md")
    set_doc_pointer(project_dir, "gameplan", "docs/gameplan.md")
    assert load_phase_state(project_dir).docs == {
        "prd": "docs/prd.md",
        "gameplan": "docs/gameplan.md",
    }


def test_phase_guidance():
    idle = phase_guidance(IDLE_PHASE)
    assert idle["progress"] == 0
    assert idle["next_steps"]

    guidance = phase_guidance(Phase("BUILD", "TEST"))
    assert guidance["step_number"] == 6
    assert guidance["steps_in_phase"] == 7
    assert guidance["progress"] == 67
