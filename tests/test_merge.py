"""Tests for merge primitives and the per-document merge functions."""

from __future__ import annotations

from pathlib import Path

from midas import store
from midas.checks import update_check_status
from midas.documents import (
    CHECKS_DOCUMENT,
    ERROR_MEMORY_CAP,
    CheckStatus,
    CheckStatusMap,
    ErrorEntry,
    FileActivity,
    FixAttempt,
    GateResult,
    HistoryEntry,
    PhaseState,
    SuggestionEntry,
    TrackerState,
    merge_check_statuses,
    merge_phase_state,
    merge_tracker_state,
)
from midas.merge import merge_mapping, newer_by, pick, union_by_key
from midas.phases import IDLE_PHASE, Phase

T0 = "2026-03-01T10:00:00.000000Z"
T1 = "2026-03-01T10:00:01.000000Z"
T2 = "2026-03-01T10:00:02.000000Z"


# -- primitives --


def test_pick_takes_remote_when_local_unchanged():
    assert pick("base", "remote", "base") == "remote"


def test_pick_keeps_local_change():
    assert pick("local", "remote", "base") == "local"
    assert pick("local", "base", "base") == "local"


def test_newer_by_prefers_later_stamp_and_ties_to_local():
    resolve = newer_by(lambda item: item[1])
    assert resolve(("local", T0), ("remote", T1)) == ("remote", T1)
    assert resolve(("local", T1), ("remote", T0)) == ("local", T1)
    assert resolve(("local", T1), ("remote", T1)) == ("local", T1)


def test_union_by_key_keeps_every_entry_sorted():
    merged = union_by_key(
        [("a", T0), ("c", T2)],
        [("b", T1), ("a", T0)],
        key=lambda item: item[0],
        order=lambda item: item[1],
        newest_first=True,
    )
    assert [item[0] for item in merged] == ["c", "b", "a"]


def test_union_by_key_truncates_to_most_recent():
    local = [(f"l{i}", f"2026-03-01T10:00:{i:02d}.000000Z") for i in range(0, 10, 2)]
    remote = [(f"r{i}", f"2026-03-01T10:00:{i:02d}.000000Z") for i in range(1, 10, 2)]

    newest = union_by_key(
        local, remote, key=lambda x: x[0], order=lambda x: x[1], newest_first=True, limit=3
    )
    assert [x[0] for x in newest] == ["r9", "l8", "r7"]

    oldest_first = union_by_key(
        local, remote, key=lambda x: x[0], order=lambda x: x[1], newest_first=False, limit=3
    )
    assert [x[0] for x in oldest_first] == ["r7", "l8", "r9"]


def test_merge_mapping_preserves_one_sided_keys():
    merged = merge_mapping({"a": 1, "l": 2}, {"a": 1, "r": 3}, {"a": 1})
    assert merged == {"a": 1, "l": 2, "r": 3}


def test_merge_mapping_takes_the_side_that_changed():
    assert merge_mapping({"k": "base"}, {"k": "remote"}, {"k": "base"}) == {"k": "remote"}
    assert merge_mapping({"k": "local"}, {"k": "base"}, {"k": "base"}) == {"k": "local"}


def test_merge_mapping_both_changed_uses_resolver():
    merged = merge_mapping(
        {"k": "local"}, {"k": "remote"}, {"k": "base"}, resolve=lambda local, remote: remote
    )
    assert merged == {"k": "remote"}


def test_merge_mapping_honours_local_deletion():
    merged = merge_mapping({}, {"old": 1, "new": 2}, {"old": 1})
    assert merged == {"new": 2}


def test_merge_mapping_honours_remote_deletion():
    merged = merge_mapping({"old": 1, "mine": 3}, {}, {"old": 1})
    assert merged == {"mine": 3}


def test_merge_mapping_keeps_key_changed_after_other_side_deleted_it():
    assert merge_mapping({}, {"k": "edited"}, {"k": "base"}) == {"k": "edited"}
    assert merge_mapping({"k": "edited"}, {}, {"k": "base"}) == {"k": "edited"}


def test_check_reset_survives_concurrent_addition(project_dir: Path):
    path = store.document_path(project_dir, CHECKS_DOCUMENT)
    update_check_status(project_dir, "old", "completed")

    def reset(checks: CheckStatusMap) -> CheckStatusMap:
        update_check_status(project_dir, "new", "pending")
        return {}

    result = store.put(path, CHECKS_DOCUMENT, reset)
    assert result.success
    assert result.merges == 1
    assert set(store.get(path, CHECKS_DOCUMENT).payload) == {"new"}


# -- phase state --


def _entry(entry_id: str, stamp: str) -> HistoryEntry:
    return HistoryEntry(phase=Phase("PLAN", "IDEA"), entered_at=stamp, exited_at=stamp, id=entry_id)


def test_phase_merge_unions_history_in_time_order():
    base = PhaseState()
    local = PhaseState(current=Phase("PLAN", "IDEA"), entered_at=T2, history=[_entry("l", T2)])
    remote = PhaseState(current=Phase("PLAN", "PRD"), entered_at=T1, history=[_entry("r", T1)])

    merged = merge_phase_state(local, remote, base)
    assert [e.id for e in merged.history] == ["r", "l"]
    # Both moved the current position; the committing writer wins.
    assert merged.current == Phase("PLAN", "IDEA")
    assert merged.entered_at == T2


def test_phase_merge_keeps_remote_position_when_local_untouched():
    base = PhaseState()
    local = PhaseState(docs={"prd": "docs/prd.md"})
    remote = PhaseState(current=Phase("BUILD", "RULES"), entered_at=T1, started_at=T0)

    merged = merge_phase_state(local, remote, base)
    assert merged.current == Phase("BUILD", "RULES")
    assert merged.started_at == T0
    assert merged.docs == {"prd": "docs/prd.md"}


def test_history_without_ids_uses_synthetic_key():
    legacy = HistoryEntry(phase=IDLE_PHASE, entered_at=T0, exited_at=T1)
    merged = merge_phase_state(
        PhaseState(history=[legacy]),
        PhaseState(history=[HistoryEntry(phase=IDLE_PHASE, entered_at=T0, exited_at=T1)]),
        PhaseState(),
    )
    assert len(merged.history) == 1


# -- tracker state --


def _error(entry_id: str, *, updated: str, attempts: list[FixAttempt], resolved: bool = False):
    return ErrorEntry(
        id=entry_id,
        message=f"boom {entry_id}",
        first_seen=T0,
        last_seen=updated,
        fix_attempts=attempts,
        resolved=resolved,
        updated_at=updated,
    )


def test_same_error_on_both_sides_unions_fix_attempts():
    a = FixAttempt(approach="restart", at=T1, worked=False)
    b = FixAttempt(approach="clear cache", at=T2, worked=True)
    local = TrackerState(errors=[_error("e", updated=T1, attempts=[a])])
    remote = TrackerState(errors=[_error("e", updated=T2, attempts=[b], resolved=True)])

    merged = merge_tracker_state(local, remote, TrackerState())
    assert len(merged.errors) == 1
    entry = merged.errors[0]
    assert [x.approach for x in entry.fix_attempts] == ["restart", "clear cache"]
    # Remote copy is newer, so its scalar fields win.
    assert entry.resolved is True
    assert entry.last_seen == T2


def test_error_memory_merge_is_capped_keeping_most_recent():
    def stamp(i: int) -> str:
        return f"2026-03-01T10:{i // 60:02d}:{i % 60:02d}.000000Z"

    local = TrackerState(
        errors=[_error(f"l{i}", updated=stamp(i), attempts=[]) for i in range(0, 80, 2)]
    )
    remote = TrackerState(
        errors=[_error(f"r{i}", updated=stamp(i), attempts=[]) for i in range(1, 80, 2)]
    )
    merged = merge_tracker_state(local, remote, TrackerState())
    assert len(merged.errors) == ERROR_MEMORY_CAP
    assert merged.errors[0].id == "r79"
    assert {e.id for e in merged.errors} == {
        f"{'l' if i % 2 == 0 else 'r'}{i}" for i in range(30, 80)
    }


def test_suggestion_outcome_on_remote_survives_merge():
    original = SuggestionEntry(id="s1", suggestion="write a test", at=T0, updated_at=T0)
    decided = SuggestionEntry(
        id="s1", suggestion="write a test", at=T0, accepted=True, updated_at=T1
    )
    added = SuggestionEntry(id="s2", suggestion="refactor", at=T2, updated_at=T2)

    merged = merge_tracker_state(
        TrackerState(suggestions=[added, original]),
        TrackerState(suggestions=[decided]),
        TrackerState(suggestions=[original]),
    )
    assert [s.id for s in merged.suggestions] == ["s2", "s1"]
    assert merged.suggestions[1].accepted is True


def test_gate_merge_is_per_gate():
    base = TrackerState()
    local = TrackerState()
    local.gates.compiles = GateResult(passed=True, checked_at=T1)
    remote = TrackerState()
    remote.gates.tests = GateResult(passed=False, checked_at=T2)

    merged = merge_tracker_state(local, remote, base)
    assert merged.gates.compiles.passed is True
    assert merged.gates.tests.passed is False
    assert merged.gates.lints.passed is None


def test_inferred_phase_and_confidence_merge_as_a_pair():
    base = TrackerState()
    local = TrackerState(last_analysis_at=T1)
    remote = TrackerState(
        inferred_phase=Phase("BUILD", "TEST"),
        confidence=60,
        file_snapshot=[FileActivity("app.py", T0)],
    )

    merged = merge_tracker_state(local, remote, base)
    assert merged.inferred_phase == Phase("BUILD", "TEST")
    assert merged.confidence == 60
    assert merged.file_snapshot == [FileActivity("app.py", T0)]
    assert merged.last_analysis_at == T1

    local.inferred_phase, local.confidence = Phase("SHIP", "REVIEW"), 75
    merged = merge_tracker_state(local, remote, base)
    assert (merged.inferred_phase, merged.confidence) == (Phase("SHIP", "REVIEW"), 75)


# -- check statuses --


def test_check_merge_newer_update_wins():
    base = {"k": CheckStatus("pending", T0)}
    local = {"k": CheckStatus("completed", T1)}
    remote = {"k": CheckStatus("skipped", T2, skip_reason="n/a")}
    assert merge_check_statuses(local, remote, base)["k"].status == "skipped"
    assert merge_check_statuses(remote, local, base)["k"].status == "skipped"


def test_check_merge_keeps_keys_from_both_sides():
    merged = merge_check_statuses(
        {"a": CheckStatus("completed", T1)}, {"b": CheckStatus("pending", T2)}, {}
    )
    assert set(merged) == {"a", "b"}
