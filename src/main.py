"""
stackforge — CLI entrypoint.

Usage:
    python -m src.main --help
    python -m src.main run --target ./app --profile web
    python -m src.main status
"""

from __future__ import annotations

import json
import signal
import sys
import threading
from pathlib import Path

import click

from src import __version__
from src.core.models.execution import ExecutionRecord, StepStatus
from src.core.observability.logging_config import resolve_level, setup_logging

# status → (icon, color)
_STATUS_STYLE: dict[StepStatus, tuple[str, str]] = {
    StepStatus.BLOCKED: ("⏸", "white"),
    StepStatus.RUNNING: ("▶", "cyan"),
    StepStatus.SUCCEEDED: ("✓", "green"),
    StepStatus.FAILED: ("✗", "red"),
    StepStatus.SKIPPED: ("⊘", "yellow"),
}


@click.group()
@click.version_option(version=__version__, prog_name="stackforge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to stackforge.yml (default: auto-detect from the target).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """stackforge — idempotent, phase-ordered project bootstrap."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(level=resolve_level(debug=debug, verbose=verbose, quiet=quiet))


def _target_option(fn):
    return click.option(
        "--target", "-t", "target",
        type=click.Path(file_okay=False, path_type=Path),
        default=None,
        help="Target project root (default: current directory).",
    )(fn)


def _steps_option(fn):
    return click.option(
        "--steps-dir",
        type=click.Path(file_okay=False, path_type=Path),
        default=None,
        help="Step sources (default: steps_dir from config).",
    )(fn)


# ── run ─────────────────────────────────────────────────────────


def _status_line(record: ExecutionRecord, previous: StepStatus) -> None:
    style = _STATUS_STYLE.get(record.status)
    if style is None:
        return
    icon, color = style
    click.secho(f"   {icon} {record.step_id} ", fg=color, nl=False)
    detail = record.label()
    if record.error_message and record.status in (StepStatus.FAILED, StepStatus.SKIPPED):
        detail += f" — {record.error_message}"
    click.echo(detail)


class _CancelOnInterrupt:
    """First Ctrl-C cancels the run gracefully; a second one aborts."""

    def __init__(self, event: threading.Event):
        self._event = event
        self._previous = None

    def __enter__(self) -> _CancelOnInterrupt:
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self._handle)
        return self

    def __exit__(self, *exc) -> None:
        if self._previous is not None:
            signal.signal(signal.SIGINT, self._previous)

    def _handle(self, signum, frame) -> None:
        if self._event.is_set():
            raise KeyboardInterrupt
        self._event.set()
        click.secho("\n⚠️  Cancelling — waiting for running steps to stop…", fg="yellow", err=True)


@cli.command()
@_target_option
@_steps_option
@click.option("--profile", "-p", default=None, help="Profile selecting steps by tag.")
@click.option("--dry-run", is_flag=True, help="Validate and report, change nothing.")
@click.option("--force", is_flag=True, help="Re-run steps that already succeeded.")
@click.option("--workers", "-w", type=click.IntRange(min=1), default=None, help="Parallel steps per phase.")
@click.option("--skip-install", is_flag=True, help="Do not install declared packages.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    target: Path | None,
    steps_dir: Path | None,
    profile: str | None,
    dry_run: bool,
    force: bool,
    workers: int | None,
    skip_install: bool,
    as_json: bool,
) -> None:
    """Run every selected step that has not succeeded yet.

    Examples:

        stackforge run --target ./app --profile web

        stackforge run --dry-run

        stackforge run --force --workers 1
    """
    from src.core.use_cases.run import run_bootstrap

    quiet = ctx.obj.get("quiet", False)
    cancel = threading.Event()

    if not as_json and not quiet:
        mode_label = "[dry-run] " if dry_run else "[force] " if force else ""
        click.secho(
            f"\n⚡ {mode_label}bootstrap{f' — profile {profile}' if profile else ''}",
            fg="cyan",
            bold=True,
        )

    with _CancelOnInterrupt(cancel):
        result = run_bootstrap(
            target_root=target,
            profile=profile,
            dry_run=dry_run,
            force=force,
            config_path=ctx.obj.get("config_path"),
            steps_dir=steps_dir,
            workers=workers,
            skip_install=skip_install,
            cancel_event=cancel,
            on_transition=None if as_json or quiet else _status_line,
        )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error_kind}: {result.error}", fg="red")
        sys.exit(1)

    report = result.report
    assert report is not None

    click.echo()
    color = "green" if report.all_ok else "red"
    click.secho(f"   Result: {report.summary_line()}", fg=color, bold=True)
    if report.cancelled:
        click.secho("   Run cancelled — re-run to resume.", fg="yellow")

    first = report.first_error
    if first is not None:
        click.secho(
            f"   First error: {first.step_id} [{first.error_kind}] {first.error_message}",
            fg="red",
        )

    click.echo()
    sys.exit(report.exit_code)


# ── plan ────────────────────────────────────────────────────────


@cli.command()
@_target_option
@_steps_option
@click.option("--profile", "-p", default=None, help="Profile selecting steps by tag.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(
    ctx: click.Context,
    target: Path | None,
    steps_dir: Path | None,
    profile: str | None,
    as_json: bool,
) -> None:
    """Show the ordered execution plan without running anything."""
    from src.core.errors import ForgeError
    from src.core.use_cases.run import plan_steps

    try:
        ws, execution_plan = plan_steps(target, profile, ctx.obj.get("config_path"), steps_dir)
    except ForgeError as e:
        if as_json:
            click.echo(json.dumps({"error": str(e), "error_kind": e.kind}, indent=2))
        else:
            click.secho(f"❌ {e.kind}: {e}", fg="red")
        sys.exit(1)

    ledger = ws.ledger()

    if as_json:
        data = execution_plan.to_dict()
        data["done"] = sorted(i for i in execution_plan.ids if ledger.has_succeeded(i))
        click.echo(json.dumps(data, indent=2))
        return

    click.secho(f"\n📋 Plan: {len(execution_plan.steps)} steps", fg="cyan", bold=True)
    for phase in execution_plan.phases:
        click.echo()
        label = f" — {phase.phase_name}" if phase.phase_name else ""
        click.secho(f"   Phase {phase.phase}{label}", fg="white", bold=True)
        for step in phase.steps:
            done = " ✓" if ledger.has_succeeded(step.id) else ""
            deps = f"  ← {', '.join(sorted(step.depends_on))}" if step.depends_on else ""
            click.echo(f"     • {step.id}{done}  {step.name}{deps}")
    click.echo()


# ── status / reset / lint ───────────────────────────────────────


@cli.command()
@_target_option
@_steps_option
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, target: Path | None, steps_dir: Path | None, as_json: bool) -> None:
    """Show which steps have completed."""
    from src.core.use_cases.status import get_status

    result = get_status(target, ctx.obj.get("config_path"), steps_dir)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(1 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    click.secho(
        f"\n📋 {result.completed}/{len(result.steps)} steps completed",
        fg="cyan",
        bold=True,
    )
    click.echo(f"   {result.target_root}")
    click.echo()

    for step in result.steps:
        if step.done:
            click.secho(f"   ✓ {step.id} ", fg="green", nl=False)
            click.echo(f"({step.completed_at})")
        elif step.last_failed_at:
            click.secho(f"   ✗ {step.id} ", fg="red", nl=False)
            click.echo(f"failed at {step.last_failed_at}: {step.last_failure or ''}")
        else:
            click.echo(f"   · {step.id} (never run)")

    if result.orphaned:
        click.echo()
        click.secho("   ⚠️  Markers for unknown steps:", fg="yellow")
        for sid in result.orphaned:
            click.echo(f"     • {sid}")

    click.echo()


@cli.command()
@_target_option
@click.argument("step_ids", nargs=-1)
@click.option("--all", "clear_all", is_flag=True, help="Forget every completed step.")
@click.pass_context
def reset(ctx: click.Context, target: Path | None, step_ids: tuple[str, ...], clear_all: bool) -> None:
    """Forget completed steps so the next run executes them again."""
    from src.core.use_cases.status import reset_steps

    if not step_ids and not clear_all:
        raise click.UsageError("Give one or more STEP_IDS, or --all.")

    result = reset_steps(
        list(step_ids), clear_all=clear_all, target_root=target,
        config_path=ctx.obj.get("config_path"),
    )

    if "error" in result:
        click.secho(f"❌ {result['error']}", fg="red")
        sys.exit(1)

    if clear_all:
        click.secho(f"🗑️  Cleared {result['cleared']} completed step(s)", fg="green")
        return

    for sid in result["cleared"]:
        click.secho(f"   ✓ cleared {sid}", fg="green")
    for sid in result["not_found"]:
        click.secho(f"   ⊘ {sid} was not marked complete", fg="yellow")


@cli.command()
@_target_option
@_steps_option
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def lint(ctx: click.Context, target: Path | None, steps_dir: Path | None, as_json: bool) -> None:
    """Validate every step header and the dependency graph."""
    from src.core.use_cases.lint import lint_steps

    result = lint_steps(target, ctx.obj.get("config_path"), steps_dir)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    if result.valid:
        click.secho(f"✅ {result.steps_loaded} step headers are valid", fg="green", bold=True)
    else:
        click.secho("❌ Step header errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        sys.exit(1)


# ── Register sub-command groups from src/ui/cli/ ──────────────────

from src.ui.cli.cache import cache

cli.add_command(cache)


if __name__ == "__main__":
    cli()
