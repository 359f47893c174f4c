"""
Step runner — executes one step body and reports a StepOutcome.

The runner never raises for step-level problems: missing variables,
install failures, script exit codes and exceptions from Python step
bodies are all captured into the returned outcome. The scheduler
decides what to record.
"""

from __future__ import annotations

import importlib.util
import logging
import os
import re
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from src.core.errors import ForgeError, InstallCancelled
from src.core.models.step import PackageKind, PackageSpec, StepDescriptor
from src.core.services.env_contract import EnvCheck, validate
from src.core.services.file_guard import FileGenerationGuard
from src.core.services.packages.manager import InstallResult, PackageInstallManager
from src.core.services.process import run_command

logger = logging.getLogger(__name__)

ENV_TARGET_ROOT = "STACKFORGE_TARGET_ROOT"
ENV_STEP_ID = "STACKFORGE_STEP_ID"

_INTERPRETERS = {".sh": ["bash"]}


@dataclass
class StepContext:
    """Everything a Python step body receives as ``run(ctx)``."""

    descriptor: StepDescriptor
    target_root: Path
    env: dict[str, str]
    packages: PackageInstallManager
    files: FileGenerationGuard
    dry_run: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def step_id(self) -> str:
        return self.descriptor.id

    def install(self, *targets: str, kind: PackageKind = "prod") -> InstallResult:
        """Install extra packages (``name`` or ``name@constraint``); raises on failure."""
        specs = [_spec_from_target(t, kind) for t in targets]
        result = self.packages.install(specs, kind)
        result.raise_for_error()
        return result


def _spec_from_target(target: str, kind: PackageKind) -> PackageSpec:
    # The leading @ of a scoped name is not a version separator
    at = target.rfind("@")
    if at > 0:
        return PackageSpec(name=target[:at], version_constraint=target[at + 1:], kind=kind)
    return PackageSpec(name=target, kind=kind)


@dataclass
class StepOutcome:
    """What happened when a step body was run."""

    ok: bool
    error_kind: str | None = None
    error_message: str | None = None
    cancelled: bool = False
    install_attempts: dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0

    @classmethod
    def failure(cls, error: BaseException, **kwargs: Any) -> StepOutcome:
        kind = getattr(error, "kind", type(error).__name__)
        return cls(ok=False, error_kind=kind, error_message=str(error), **kwargs)


class StepRunner:
    """Runs step bodies against one target project.

    Args:
        target_root: Directory the steps generate into.
        packages: Shared package installation manager.
        files: Shared file generation guard.
        base_env: Variables visible to steps (config defaults under os.environ).
        step_timeout: Default script timeout in seconds.
        skip_install: Do not install header-declared packages.
        cancel_event: Shared run cancellation flag.
    """

    def __init__(
        self,
        target_root: Path,
        packages: PackageInstallManager,
        files: FileGenerationGuard,
        *,
        base_env: Mapping[str, str] | None = None,
        step_timeout: int = 600,
        skip_install: bool = False,
        cancel_event: threading.Event | None = None,
        dry_run: bool = False,
    ):
        self._root = target_root
        self._packages = packages
        self._files = files
        self._env = dict(os.environ if base_env is None else base_env)
        self._timeout = step_timeout
        self._skip_install = skip_install
        self._cancel = cancel_event or threading.Event()
        self._dry_run = dry_run

    def check_env(self, step: StepDescriptor) -> EnvCheck:
        return validate(step, self._env)

    def run(self, step: StepDescriptor) -> StepOutcome:
        """Validate, install declared packages, then execute the body."""
        start = time.monotonic()
        outcome = self._run(step)
        outcome.duration_ms = int((time.monotonic() - start) * 1000)
        return outcome

    def _run(self, step: StepDescriptor) -> StepOutcome:
        check = self.check_env(step)
        if check.error is not None:
            return StepOutcome.failure(check.error)

        attempts: dict[str, int] = {}
        if not self._skip_install:
            for kind, specs in (("prod", step.prod_packages), ("dev", step.dev_packages)):
                if not specs:
                    continue
                result = self._packages.install(specs, kind)
                attempts.update(result.attempts)
                if result.error is not None:
                    return StepOutcome.failure(
                        result.error,
                        cancelled=isinstance(result.error, InstallCancelled),
                        install_attempts=attempts,
                    )

        if self._cancel.is_set():
            return StepOutcome(
                ok=False, error_kind="Cancelled", error_message="Cancelled",
                cancelled=True, install_attempts=attempts,
            )

        env = {**self._env, **check.resolved}
        env[ENV_TARGET_ROOT] = str(self._root)
        env[ENV_STEP_ID] = step.id

        path = step.source_path
        if path is None:
            # Header-only step: packages were its whole body
            return StepOutcome(ok=True, install_attempts=attempts)

        if path.suffix == ".py":
            outcome = self._run_python(step, path, env)
        else:
            outcome = self._run_script(step, path, env)
        outcome.install_attempts = attempts
        return outcome

    # ── Bodies ──────────────────────────────────────────────────

    def _run_python(self, step: StepDescriptor, path: Path, env: dict[str, str]) -> StepOutcome:
        module_name = "stackforge_step_" + re.sub(r"\W", "_", step.id)

        try:
            spec = importlib.util.spec_from_file_location(module_name, path)
            if spec is None or spec.loader is None:
                raise ForgeError(f"Cannot load step module {path}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
        except Exception as e:
            logger.error("%s: failed to import %s: %s", step.id, path, e)
            return StepOutcome.failure(e)

        body = getattr(module, "run", None)
        if not callable(body):
            return StepOutcome(
                ok=False, error_kind="StepError",
                error_message=f"{path.name} does not define run(ctx)",
            )

        ctx = StepContext(
            descriptor=step,
            target_root=self._root,
            env=env,
            packages=self._packages,
            files=self._files,
            dry_run=self._dry_run,
            cancel_event=self._cancel,
        )
        try:
            returned = body(ctx)
        except InstallCancelled as e:
            return StepOutcome.failure(e, cancelled=True)
        except Exception as e:
            logger.debug("%s: body raised", step.id, exc_info=True)
            return StepOutcome.failure(e)

        if returned is False:
            return StepOutcome(ok=False, error_kind="StepError", error_message="run() returned False")
        return StepOutcome(ok=True)

    def _run_script(self, step: StepDescriptor, path: Path, env: dict[str, str]) -> StepOutcome:
        cmd = _INTERPRETERS.get(path.suffix, []) + [str(path)]
        timeout = step.timeout or self._timeout

        try:
            result = run_command(
                cmd, cwd=self._root, env=env, timeout=timeout, cancel_event=self._cancel,
            )
        except OSError as e:
            return StepOutcome.failure(e)

        if result.cancelled:
            return StepOutcome(
                ok=False, error_kind="Cancelled", error_message="Cancelled", cancelled=True,
            )
        if result.timed_out:
            return StepOutcome(
                ok=False, error_kind="Timeout", error_message=f"timed out after {timeout}s",
            )
        if not result.ok:
            tail = (result.stderr or result.stdout).strip().splitlines()
            detail = f": {tail[-1]}" if tail else ""
            return StepOutcome(
                ok=False, error_kind="StepError",
                error_message=f"{path.name} {result.describe()}{detail}",
            )
        return StepOutcome(ok=True)
