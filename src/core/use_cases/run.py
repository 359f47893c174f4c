"""
Run use case — the driver boundary of the orchestrator.

Loads config and the step registry, builds the plan for a profile,
wires the ledger, package manager, file guard and step runner
together, and executes. Registry and plan errors end the run before
any step starts.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from src.core.engine.scheduler import ExecutionPlan, Scheduler, TransitionCallback, build_plan
from src.core.engine.step_runner import StepRunner
from src.core.errors import ForgeError
from src.core.models.execution import RunReport
from src.core.reliability.retry import RetryPolicy
from src.core.services.file_guard import FileGenerationGuard
from src.core.services.packages import (
    NodePackageBackend,
    PackageBackend,
    PackageCache,
    PackageInstallManager,
)
from src.core.use_cases.workspace import Workspace, open_workspace

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Result of one orchestrator run."""

    report: RunReport | None = None
    plan: ExecutionPlan | None = None
    target_root: Path | None = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def exit_code(self) -> int:
        if self.error or self.report is None:
            return 1
        return self.report.exit_code

    def to_dict(self) -> dict:
        result: dict = {"exit_code": self.exit_code}
        if self.error:
            result["error"] = self.error
            result["error_kind"] = self.error_kind
            return result

        result["target_root"] = str(self.target_root)
        if self.report:
            result["report"] = self.report.to_dict()
        return result


def build_manager(
    ws: Workspace,
    *,
    backend: PackageBackend | None = None,
    cancel_event: threading.Event | None = None,
    dry_run: bool = False,
) -> PackageInstallManager:
    """Package installation manager configured from the workspace."""
    settings = ws.config.install
    return PackageInstallManager(
        ws.target_root,
        backend or NodePackageBackend(ws.config.package_manager),
        PackageCache(ws.cache_dir),
        RetryPolicy(
            max_attempts=settings.attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        ),
        timeout=settings.timeout,
        cancel_event=cancel_event,
        dry_run=dry_run,
    )


def plan_steps(
    target_root: Path | None = None,
    profile: str | None = None,
    config_path: Path | None = None,
    steps_dir: Path | None = None,
) -> tuple[Workspace, ExecutionPlan]:
    """Load the registry and build the plan for ``profile``.

    Raises:
        ForgeError: Config, registry or plan errors.
    """
    ws = open_workspace(target_root, config_path, steps_dir)
    plan = build_plan(ws.steps, ws.config.profile_tags(profile))
    return ws, plan


def run_bootstrap(
    target_root: Path | None = None,
    profile: str | None = None,
    dry_run: bool = False,
    force: bool = False,
    config_path: Path | None = None,
    steps_dir: Path | None = None,
    workers: int | None = None,
    skip_install: bool = False,
    backend: PackageBackend | None = None,
    cancel_event: threading.Event | None = None,
    on_transition: TransitionCallback | None = None,
) -> RunResult:
    """Execute every selected step against ``target_root``.

    Args:
        target_root: Project directory steps generate into (default: cwd).
        profile: Profile name selecting steps by tag (None = all steps).
        dry_run: Validate and report without running or writing anything.
        force: Re-run steps that already succeeded.
        config_path: Explicit stackforge.yml.
        steps_dir: Override for the step source directory.
        workers: Worker pool size (default: config, else CPU count).
        skip_install: Do not install header-declared packages.
        backend: Package backend (default: pnpm/npm per config).
        cancel_event: Set to cancel the run.
        on_transition: Per-transition callback for status output.

    Returns:
        RunResult with the run report, or an error for config/registry/plan
        problems.
    """
    result = RunResult()
    cancel = cancel_event or threading.Event()

    try:
        ws, plan = plan_steps(target_root, profile, config_path, steps_dir)
    except ForgeError as e:
        logger.error("%s", e)
        result.error = str(e)
        result.error_kind = e.kind
        return result

    result.plan = plan
    result.target_root = ws.target_root

    if not plan.steps:
        logger.warning("No steps selected%s", f" for profile '{profile}'" if profile else "")

    manager = build_manager(ws, backend=backend, cancel_event=cancel, dry_run=dry_run)
    runner = StepRunner(
        ws.target_root,
        manager,
        FileGenerationGuard(ws.target_root, dry_run=dry_run),
        base_env=ws.step_env(),
        step_timeout=ws.config.step_timeout,
        skip_install=skip_install,
        cancel_event=cancel,
        dry_run=dry_run,
    )
    scheduler = Scheduler(
        ws.ledger(dry_run=dry_run),
        runner,
        workers=workers or ws.config.workers,
        cancel_event=cancel,
        on_transition=on_transition,
        dry_run=dry_run,
        force=force,
    )

    result.report = scheduler.execute(plan)
    return result
