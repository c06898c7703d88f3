from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import click

from midas import __version__
from midas.checks import (
    all_check_statuses,
    check_summary,
    reset_check_statuses,
    update_check_status,
)
from midas.config import load_settings
from midas.documents import CHECK_STATUSES, GATE_NAMES, TASK_STAGES
from midas.paths import config_path, state_dir
from midas.phase import (
    advance_phase,
    end_hotfix,
    load_phase_document,
    maybe_auto_advance,
    phase_guidance,
    rewind_phase,
    set_doc_pointer,
    set_phase_by_name,
    start_hotfix,
)
from midas.phases import PHASE_ORDER, PHASE_STEPS, progress_percent
from midas.snapshot import build_snapshot
from midas.store import WriteResult
from midas.tracker import (
    UNCHANGED,
    activity_summary,
    clear_task_focus,
    gates_status,
    load_tracker,
    mark_analysis_complete,
    record_error,
    record_fix_attempt,
    record_gate_results,
    record_suggestion,
    record_suggestion_outcome,
    set_task_focus,
    stuck_errors,
    stuck_status,
    suggestion_acceptance_rate,
    unresolved_errors,
    update_inferred_phase,
    update_task_stage,
)

CONFIG_TEMPLATE = """\
# midas per-project settings

[state]
history_limit = 200

[stuck]
after_hours = 2
fix_attempts = 2

[gates]
stale_minutes = 10
"""


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click exceptions are emitted as a JSON error object on stdout instead of
    plain-text usage on stderr. Unknown commands get fuzzy-matched
    suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _project(ctx: click.Context) -> Path:
    return ctx.obj["project"]


def _committed(result: WriteResult, what: str) -> dict[str, Any]:
    """Raise for a failed write, otherwise return its JSON form."""
    if not result.success:
        raise click.ClickException(f"Could not update {what}: {result.error}")
    return result.to_dict()


def _tri_state(value: str | None) -> Any:
    if value is None:
        return UNCHANGED
    if value == "unknown":
        return None
    return value == "pass"


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--project",
    "-C",
    "project_dir",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project directory (default: current directory).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log store activity to stderr.")
@click.pass_context
def main(ctx: click.Context, project_dir: str, verbose: bool):
    """Track a project through the PLAN, BUILD, SHIP and GROW lifecycle.

    \b
    Quick start:
      midas init                      Create .midas/ with a default config
      midas phase set PLAN            Start planning
      midas gates set --compiles pass --tests pass
      midas phase next                Move to the next step
      midas status                    Where am I, and am I stuck?

    \b
    Key concepts:
      phase     IDLE, PLAN, BUILD, SHIP or GROW, each with ordered steps
      gates     Build/test/lint outcomes reported by your tooling
      error     A remembered failure and the fixes tried against it
      check     A named item marked pending, completed or skipped
    """
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["project"] = Path(project_dir)


# -- init --


@main.command()
@click.pass_context
def init(ctx: click.Context):
    """Create the .midas/ state directory and a default config.toml."""
    project = _project(ctx)
    directory = state_dir(project)
    directory.mkdir(parents=True, exist_ok=True)
    config = config_path(project)
    created = not config.exists()
    if created:
        config.write_text(CONFIG_TEMPLATE)
    _emit({"state_dir": str(directory), "config": str(config), "config_created": created})


# -- status / snapshot --


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Show phase, progress, gates and the stuck signal."""
    project = _project(ctx)
    doc = load_phase_document(project)
    state = doc.payload
    _emit(
        {
            "phase": state.current.to_dict(),
            "label": state.current.label(),
            "progress": progress_percent(state.current),
            "entered_at": state.entered_at,
            "hotfix": state.hotfix.to_dict(),
            "version": doc.version,
            "gates": gates_status(project).to_dict(),
            "stuck": stuck_status(project).to_dict(),
            "activity": activity_summary(project),
            "guidance": phase_guidance(state.current),
            "settings": vars(load_settings(project)),
        }
    )


@main.command()
@click.pass_context
def snapshot(ctx: click.Context):
    """Print the read-only dashboard snapshot."""
    _emit(build_snapshot(_project(ctx)))


@main.command()
@click.option("--rescan", is_flag=True, help="Diff all files against the stored file snapshot.")
@click.option("--mark-analyzed", is_flag=True, help="Record that an analysis just finished.")
@click.pass_context
def activity(ctx: click.Context, rescan: bool, mark_analyzed: bool):
    """Summarize recent activity and the phase it suggests."""
    from midas.watcher import detect_file_changes, has_files_changed_since_analysis

    project = _project(ctx)
    payload: dict[str, Any] = {}
    if rescan:
        changes = detect_file_changes(project)
        if changes is None:
            raise click.ClickException("Failed to store the file snapshot.")
        payload["changes"] = changes.to_dict()
        _committed(update_inferred_phase(project), "inferred phase")
    if mark_analyzed:
        _committed(mark_analysis_complete(project), "analysis stamp")
    tracker = load_tracker(project)
    payload.update(
        {
            "summary": activity_summary(project),
            "inferred_phase": tracker.inferred_phase.to_dict(),
            "confidence": tracker.confidence,
            "last_analysis_at": tracker.last_analysis_at,
            "changed_since_analysis": has_files_changed_since_analysis(project),
        }
    )
    _emit(payload)


# -- phase --


@main.group()
def phase():
    """Inspect and move through the lifecycle."""


@phase.command("show")
@click.option("--history", "show_history", is_flag=True, help="Include transition history.")
@click.pass_context
def phase_show(ctx: click.Context, show_history: bool):
    """Show the current phase and step."""
    doc = load_phase_document(_project(ctx))
    state = doc.payload
    payload: dict[str, Any] = {
        "phase": state.current.to_dict(),
        "progress": progress_percent(state.current),
        "started_at": state.started_at,
        "entered_at": state.entered_at,
        "docs": state.docs,
        "history_count": len(state.history),
        "version": doc.version,
    }
    if show_history:
        payload["history"] = [entry.to_dict() for entry in state.history]
    _emit(payload)


@phase.command("set")
@click.argument("name", type=click.Choice(PHASE_ORDER, case_sensitive=False))
@click.argument("step", required=False)
@click.pass_context
def phase_set(ctx: click.Context, name: str, step: str | None):
    """Move to NAME (and STEP, default the phase's first step)."""
    try:
        transition = set_phase_by_name(_project(ctx), name.upper(), step.upper() if step else None)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    if not transition.success:
        raise click.ClickException(f"Could not change phase: {transition.error}")
    _emit(transition.to_dict())


@phase.command("next")
@click.pass_context
def phase_next(ctx: click.Context):
    """Advance one step."""
    transition = advance_phase(_project(ctx))
    if not transition.success:
        raise click.ClickException(f"Could not change phase: {transition.error}")
    _emit(transition.to_dict())


@phase.command("prev")
@click.pass_context
def phase_prev(ctx: click.Context):
    """Go back one step."""
    transition = rewind_phase(_project(ctx))
    if not transition.success:
        raise click.ClickException(f"Could not change phase: {transition.error}")
    _emit(transition.to_dict())


@phase.command("steps")
def phase_steps():
    """List every phase and its steps."""
    _emit({name: list(PHASE_STEPS.get(name, ())) for name in PHASE_ORDER})


@phase.command("hotfix")
@click.argument("description", required=False)
@click.option("--end", "end", is_flag=True, help="Leave hotfix mode and restore the phase.")
@click.pass_context
def phase_hotfix(ctx: click.Context, description: str | None, end: bool):
    """Start a hotfix (with DESCRIPTION) or end the active one (--end)."""
    project = _project(ctx)
    if end:
        transition = end_hotfix(project)
        if transition is None:
            raise click.ClickException("No active hotfix.")
        _emit(transition.to_dict())
        return
    if not description:
        raise click.ClickException("DESCRIPTION is required to start a hotfix.")
    _emit(_committed(start_hotfix(project, description), "hotfix"))


@phase.command("doc")
@click.argument("kind")
@click.argument("path")
@click.pass_context
def phase_doc(ctx: click.Context, kind: str, path: str):
    """Record where a planning document (brainlift, prd, gameplan) lives."""
    _emit(_committed(set_doc_pointer(_project(ctx), kind, path), "doc pointer"))


# -- error memory --


@main.group()
def error():
    """Remember errors and the fixes tried against them."""


@error.command("record")
@click.argument("message")
@click.option("--file", "-f", "file", default=None, help="File the error points at.")
@click.option("--line", "-l", type=int, default=None, help="Line number.")
@click.pass_context
def error_record(ctx: click.Context, message: str, file: str | None, line: int | None):
    """Record an error MESSAGE."""
    entry = record_error(_project(ctx), message, file, line)
    if entry is None:
        raise click.ClickException("Could not record error.")
    _emit(
        {"id": entry.id, "first_seen": entry.first_seen, "failed_attempts": entry.failed_attempts}
    )


@error.command("fix")
@click.argument("error_id")
@click.argument("approach")
@click.option("--worked/--failed", default=False, help="Whether the fix resolved the error.")
@click.pass_context
def error_fix(ctx: click.Context, error_id: str, approach: str, worked: bool):
    """Record a fix APPROACH tried against ERROR_ID."""
    if not record_fix_attempt(_project(ctx), error_id, approach, worked):
        raise click.ClickException(
            f"Error '{error_id}' not found. Run 'midas error list' to see errors."
        )
    _emit({"id": error_id, "worked": worked})


@error.command("list")
@click.option("--stuck", "only_stuck", is_flag=True, help="Only errors with repeated failed fixes.")
@click.pass_context
def error_list(ctx: click.Context, only_stuck: bool):
    """List unresolved errors."""
    project = _project(ctx)
    entries = stuck_errors(project) if only_stuck else unresolved_errors(project)
    _emit(
        [
            {
                "id": e.id,
                "message": e.message,
                "file": e.file,
                "line": e.line,
                "first_seen": e.first_seen,
                "last_seen": e.last_seen,
                "failed_attempts": e.failed_attempts,
                "approaches": [a.approach for a in e.fix_attempts],
            }
            for e in entries
        ]
    )


# -- suggestions --


@main.group()
def suggest():
    """Track suggested prompts and whether they were used."""


@suggest.command("record")
@click.argument("text")
@click.pass_context
def suggest_record(ctx: click.Context, text: str):
    """Remember a suggested prompt TEXT."""
    entry = record_suggestion(_project(ctx), text)
    if entry is None:
        raise click.ClickException("Could not record suggestion.")
    _emit({"id": entry.id, "at": entry.at})


@suggest.command("outcome")
@click.argument("decision", type=click.Choice(["accepted", "rejected"]))
@click.option("--id", "suggestion_id", default=None, help="Suggestion id (default: latest).")
@click.option("--prompt", "user_prompt", default=None, help="What was actually sent instead.")
@click.option("--reason", "rejection_reason", default=None, help="Why it was rejected.")
@click.pass_context
def suggest_outcome(
    ctx: click.Context,
    decision: str,
    suggestion_id: str | None,
    user_prompt: str | None,
    rejection_reason: str | None,
):
    """Record whether the latest (or --id) suggestion was accepted."""
    project = _project(ctx)
    ok = record_suggestion_outcome(
        project,
        decision == "accepted",
        suggestion_id=suggestion_id,
        user_prompt=user_prompt,
        rejection_reason=rejection_reason,
    )
    if not ok:
        raise click.ClickException("No matching suggestion.")
    _emit({"recorded": decision, "acceptance_rate": suggestion_acceptance_rate(project)})


# -- gates --


@main.group()
def gates():
    """Record and inspect build/test/lint gates."""


_GATE_CHOICE = click.Choice(["pass", "fail", "unknown"])


@gates.command("set")
@click.option("--compiles", type=_GATE_CHOICE, default=None)
@click.option("--tests", type=_GATE_CHOICE, default=None)
@click.option("--lints", type=_GATE_CHOICE, default=None)
@click.option("--advance/--no-advance", default=True, help="Auto-advance when all gates pass.")
@click.pass_context
def gates_set(
    ctx: click.Context,
    compiles: str | None,
    tests: str | None,
    lints: str | None,
    advance: bool,
):
    """Record gate outcomes reported by external tooling."""
    project = _project(ctx)
    if compiles is None and tests is None and lints is None:
        raise click.ClickException("Pass at least one of --compiles, --tests, --lints.")
    result = record_gate_results(
        project,
        compiles=_tri_state(compiles),
        tests=_tri_state(tests),
        lints=_tri_state(lints),
    )
    payload = _committed(result, "gates")
    payload["gates"] = gates_status(project).to_dict()
    if advance:
        transition = maybe_auto_advance(project)
        payload["advanced"] = transition.to_dict() if transition is not None else None
    _emit(payload)


@gates.command("show")
@click.pass_context
def gates_show(ctx: click.Context):
    """Show gate results and whether they are stale."""
    project = _project(ctx)
    tracker_gates = load_tracker(project).gates
    _emit(
        {
            "status": gates_status(project).to_dict(),
            "gates": {
                name: vars(getattr(tracker_gates, name)) for name in GATE_NAMES
            },
        }
    )


# -- checks --


@main.group()
def check():
    """Mark named checks pending, completed or skipped."""


@check.command("set")
@click.argument("key")
@click.argument("status", type=click.Choice(CHECK_STATUSES))
@click.option("--reason", "skip_reason", default=None, help="Why the check was skipped.")
@click.pass_context
def check_set(ctx: click.Context, key: str, status: str, skip_reason: str | None):
    """Set check KEY to STATUS."""
    try:
        result = update_check_status(_project(ctx), key, status, skip_reason)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    _emit(_committed(result, f"check '{key}'"))


@check.command("list")
@click.pass_context
def check_list(ctx: click.Context):
    """List every check and per-status counts."""
    project = _project(ctx)
    _emit(
        {
            "summary": check_summary(project),
            "checks": {key: vars(c) for key, c in sorted(all_check_statuses(project).items())},
        }
    )


@check.command("reset")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation.")
@click.pass_context
def check_reset(ctx: click.Context, yes: bool):
    """Clear every check status."""
    if not yes:
        click.confirm("Clear all check statuses?", abort=True, err=True)
    _emit(_committed(reset_check_statuses(_project(ctx)), "checks"))


# -- task focus --


@main.group()
def focus():
    """Set or clear the task currently being worked on."""


@focus.command("set")
@click.argument("description")
@click.option("--file", "-f", "files", multiple=True, help="Related file (repeatable).")
@click.pass_context
def focus_set(ctx: click.Context, description: str, files: tuple[str, ...]):
    """Focus on DESCRIPTION."""
    task = set_task_focus(_project(ctx), description, list(files))
    if task is None:
        raise click.ClickException("Could not set task focus.")
    _emit(vars(task))


@focus.command("stage")
@click.argument("stage", type=click.Choice(TASK_STAGES))
@click.pass_context
def focus_stage(ctx: click.Context, stage: str):
    """Move the focused task to STAGE."""
    if not update_task_stage(_project(ctx), stage):
        raise click.ClickException("No task in focus. Run 'midas focus set' first.")
    _emit(vars(load_tracker(_project(ctx)).current_task))


@focus.command("clear")
@click.pass_context
def focus_clear(ctx: click.Context):
    """Clear the task focus."""
    _emit(_committed(clear_task_focus(_project(ctx)), "task focus"))


# -- processes --


@main.command()
@click.option("--interval", "-i", type=float, default=5.0, show_default=True)
@click.option("--cycles", type=int, default=None, help="Stop after N polling cycles.")
@click.pass_context
def watch(ctx: click.Context, interval: float, cycles: int | None):
    """Poll for file activity and auto-advance when gates pass."""
    from midas.watcher import run_forever
    from midas.watcher import watch as run_watch

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    project = _project(ctx)
    if cycles:
        stats = run_watch(project, interval, max_cycles=cycles)
    else:
        stats = run_forever(project, interval)
    _emit(stats.to_dict())


@main.command()
@click.pass_context
def serve(ctx: click.Context):
    """Run the MCP server for this project over stdio."""
    from midas.server import run_server

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    run_server(_project(ctx))
