"""MCP server exposing midas state to coding agents over stdio.

One server process is bound to one project directory. Every tool returns a
JSON string and records itself in the tracker's tool-call log, so the CLI,
the watcher and this server all see the same activity.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from midas import __version__
from midas.checks import all_check_statuses, check_summary, update_check_status
from midas.phase import (
    advance_phase,
    load_phase_state,
    phase_guidance,
    set_phase_by_name,
)
from midas.phases import progress_percent
from midas.snapshot import build_snapshot
from midas.tracker import (
    UNCHANGED,
    activity_summary,
    clear_task_focus,
    gates_status,
    record_error,
    record_fix_attempt,
    record_gate_results,
    record_suggestion,
    record_suggestion_outcome,
    record_tool_call,
    set_task_focus,
    stuck_errors,
    stuck_status,
    unresolved_errors,
)

log = logging.getLogger(__name__)

PROJECT_ENV = "MIDAS_PROJECT_DIR"


def _json(data: Any) -> str:
    return json.dumps(data, indent=2)


def build_server(project_dir: str | os.PathLike[str]) -> FastMCP:
    """Create a FastMCP server whose tools operate on ``project_dir``."""
    project = Path(project_dir).resolve()
    server = FastMCP("midas")

    def track(tool: str, **args: Any) -> None:
        record_tool_call(project, tool, {k: v for k, v in args.items() if v is not None})

    @server.tool()
    def midas_status() -> str:
        """Current phase, step, progress, gates and stuck signal."""
        track("midas_status")
        state = load_phase_state(project)
        return _json(
            {
                "phase": state.current.to_dict(),
                "progress": progress_percent(state.current),
                "hotfix": state.hotfix.to_dict(),
                "gates": gates_status(project).to_dict(),
                "stuck": stuck_status(project).to_dict(),
                "activity": activity_summary(project),
                "guidance": phase_guidance(state.current),
            }
        )

    @server.tool()
    def midas_set_phase(phase: str, step: str | None = None) -> str:
        """Move to a lifecycle phase (IDLE, PLAN, BUILD, SHIP, GROW) and optional step."""
        track("midas_set_phase", phase=phase, step=step)
        try:
            transition = set_phase_by_name(project, phase, step)
        except ValueError as exc:
            return _json({"success": False, "error": str(exc)})
        return _json(transition.to_dict())

    @server.tool()
    def midas_advance_phase() -> str:
        """Advance one step along the lifecycle."""
        track("midas_advance_phase")
        return _json(advance_phase(project).to_dict())

    @server.tool()
    def midas_record_error(message: str, file: str | None = None, line: int | None = None) -> str:
        """Remember an error so repeated fix attempts can be tracked."""
        track("midas_record_error", file=file, line=line)
        entry = record_error(project, message, file, line)
        if entry is None:
            return _json({"success": False, "error": "write failed"})
        return _json(
            {"success": True, "error_id": entry.id, "failed_attempts": entry.failed_attempts}
        )

    @server.tool()
    def midas_record_fix(error_id: str, approach: str, worked: bool) -> str:
        """Record a fix attempt against a remembered error."""
        track("midas_record_fix", error_id=error_id, worked=worked)
        return _json({"success": record_fix_attempt(project, error_id, approach, worked)})

    @server.tool()
    def midas_errors() -> str:
        """Unresolved errors and those stuck after repeated failed fixes."""
        track("midas_errors")
        return _json(
            {
                "unresolved": [
                    {"id": e.id, "message": e.message, "file": e.file, "line": e.line}
                    for e in unresolved_errors(project)
                ],
                "stuck": [
                    {"id": e.id, "failed_attempts": e.failed_attempts}
                    for e in stuck_errors(project)
                ],
            }
        )

    @server.tool()
    def midas_record_suggestion(suggestion: str) -> str:
        """Remember a suggested next prompt."""
        track("midas_record_suggestion")
        entry = record_suggestion(project, suggestion)
        return _json({"success": entry is not None, "id": entry.id if entry else None})

    @server.tool()
    def midas_suggestion_outcome(
        accepted: bool,
        suggestion_id: str | None = None,
        user_prompt: str | None = None,
        rejection_reason: str | None = None,
    ) -> str:
        """Record whether a suggestion was accepted (defaults to the latest)."""
        track("midas_suggestion_outcome", accepted=accepted, suggestion_id=suggestion_id)
        ok = record_suggestion_outcome(
            project,
            accepted,
            suggestion_id=suggestion_id,
            user_prompt=user_prompt,
            rejection_reason=rejection_reason,
        )
        return _json({"success": ok})

    @server.tool()
    def midas_record_gates(
        compiles: bool | None = None,
        tests: bool | None = None,
        lints: bool | None = None,
        unknown: list[str] | None = None,
    ) -> str:
        """Record build/test/lint outcomes; omitted gates are left unchanged.

        Gates named in ``unknown`` (compiles, tests, lints) are reset to unknown.
        """
        track("midas_record_gates", compiles=compiles, tests=tests, lints=lints, unknown=unknown)
        reset = set(unknown or ())
        outcomes = {"compiles": compiles, "tests": tests, "lints": lints}
        gates = {
            name: None if name in reset else (UNCHANGED if value is None else value)
            for name, value in outcomes.items()
        }
        result = record_gate_results(project, **gates)
        return _json({**result.to_dict(), "gates": gates_status(project).to_dict()})

    @server.tool()
    def midas_set_check(key: str, status: str, skip_reason: str | None = None) -> str:
        """Set a check to pending, completed or skipped."""
        track("midas_set_check", key=key, status=status)
        try:
            result = update_check_status(project, key, status, skip_reason)
        except ValueError as exc:
            return _json({"success": False, "error": str(exc)})
        return _json(result.to_dict())

    @server.tool()
    def midas_checks() -> str:
        """All check statuses and per-status counts."""
        track("midas_checks")
        checks = all_check_statuses(project)
        return _json(
            {
                "summary": check_summary(project),
                "checks": {
                    key: {
                        "status": c.status,
                        "updated_at": c.updated_at,
                        "skip_reason": c.skip_reason,
                    }
                    for key, c in sorted(checks.items())
                },
            }
        )

    @server.tool()
    def midas_focus(description: str | None = None, related_files: list[str] | None = None) -> str:
        """Set the current task focus, or clear it when no description is given."""
        track("midas_focus")
        if not description:
            return _json(clear_task_focus(project).to_dict())
        task = set_task_focus(project, description, related_files)
        return _json({"success": task is not None})

    @server.tool()
    def midas_snapshot() -> str:
        """Read-only dashboard snapshot of the project."""
        return _json(build_snapshot(project))

    return server


def run_server(project_dir: str | os.PathLike[str]) -> None:
    log.info("midas %s MCP server for %s", __version__, project_dir)
    build_server(project_dir).run(transport="stdio")


def main() -> None:
    # stdout carries the protocol; logs go to stderr.
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    run_server(os.environ.get(PROJECT_ENV) or os.getcwd())


if __name__ == "__main__":
    main()
