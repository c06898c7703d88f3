"""Lifecycle vocabulary: phases, their ordered steps, and progress mapping."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

IDLE = "IDLE"
PLAN = "PLAN"
BUILD = "BUILD"
SHIP = "SHIP"
GROW = "GROW"

PHASE_ORDER = (IDLE, PLAN, BUILD, SHIP, GROW)

PHASE_STEPS: dict[str, tuple[str, ...]] = {
    PLAN: ("IDEA", "RESEARCH", "BRAINLIFT", "PRD", "GAMEPLAN"),
    BUILD: ("RULES", "INDEX", "READ", "RESEARCH", "IMPLEMENT", "TEST", "DEBUG"),
    SHIP: ("REVIEW", "DEPLOY", "MONITOR"),
    GROW: ("DONE",),
}

# Phases counted toward the progress percentage; GROW is reported as 100.
_PROGRESS_PHASES = (PLAN, BUILD, SHIP)


@dataclass(frozen=True)
class Phase:
    """A position in the lifecycle. ``step`` is None only for IDLE."""

    phase: str
    step: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.step is None:
            return {"phase": self.phase}
        return {"phase": self.phase, "step": self.step}

    def label(self) -> str:
        return self.phase if self.step is None else f"{self.phase}:{self.step}"


IDLE_PHASE = Phase(IDLE)

_FLAT_STEPS: tuple[Phase, ...] = tuple(
    Phase(name, step) for name in (PLAN, BUILD, SHIP, GROW) for step in PHASE_STEPS[name]
)


def parse_phase(phase: str, step: str | None = None) -> Phase:
    """Build a validated Phase, raising ``ValueError`` for unknown names.

    A phase given without a step starts at that phase's first step.
    """
    name = phase.strip().upper()
    if name == IDLE:
        return IDLE_PHASE
    steps = PHASE_STEPS.get(name)
    if steps is None:
        msg = f"Unknown phase: {phase}. Supported: {', '.join(PHASE_ORDER)}"
        raise ValueError(msg)
    if step is None:
        return Phase(name, steps[0])
    step_name = step.strip().upper()
    if step_name not in steps:
        msg = f"Unknown step for {name}: {step}. Supported: {', '.join(steps)}"
        raise ValueError(msg)
    return Phase(name, step_name)


def decode_phase(raw: Any) -> Phase | None:
    """Decode a persisted phase object; None when it is not a valid phase."""
    if not isinstance(raw, dict):
        return None
    name = raw.get("phase")
    step = raw.get("step")
    if name == IDLE:
        return IDLE_PHASE
    if not isinstance(name, str) or not isinstance(step, str):
        return None
    if step not in PHASE_STEPS.get(name, ()):
        return None
    return Phase(name, step)


def step_index(phase: Phase) -> int:
    """Zero-based index of the step within its phase (0 for IDLE)."""
    if phase.phase == IDLE or phase.step is None:
        return 0
    return PHASE_STEPS[phase.phase].index(phase.step)


def next_phase(current: Phase) -> Phase:
    """Next position in the lifecycle; the end of GROW loops back to planning."""
    if current.phase == IDLE:
        return _FLAT_STEPS[0]
    try:
        idx = _FLAT_STEPS.index(current)
    except ValueError:
        return _FLAT_STEPS[0]
    if idx >= len(_FLAT_STEPS) - 1:
        return _FLAT_STEPS[0]
    return _FLAT_STEPS[idx + 1]


def prev_phase(current: Phase) -> Phase:
    """Previous position in the lifecycle; the first step stays where it is."""
    if current.phase == IDLE:
        return IDLE_PHASE
    try:
        idx = _FLAT_STEPS.index(current)
    except ValueError:
        return current
    if idx <= 0:
        return current
    return _FLAT_STEPS[idx - 1]


def progress_percent(phase: Phase, steps_per_phase: Mapping[str, int] | None = None) -> int:
    """Map a lifecycle position to a 0-100 progress percentage.

    Pure function of (phase, step index, steps per phase). IDLE is 0 and
    GROW is 100; otherwise the completed steps of earlier phases plus the
    current step index over the total steps of PLAN, BUILD and SHIP.
    """
    if phase.phase == IDLE:
        return 0
    if phase.phase == GROW:
        return 100
    counts = {name: len(PHASE_STEPS[name]) for name in _PROGRESS_PHASES}
    if steps_per_phase:
        counts.update({k: v for k, v in steps_per_phase.items() if k in counts})
    total = sum(counts.values())
    if total <= 0:
        return 0
    completed = 0
    for name in _PROGRESS_PHASES:
        if name == phase.phase:
            break
        completed += counts[name]
    completed += min(step_index(phase), counts[phase.phase])
    return min(100, math.floor(completed * 100 / total + 0.5))
