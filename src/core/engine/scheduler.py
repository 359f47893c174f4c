"""
Scheduler — builds the execution plan and drives it to completion.

Planning (pure):
    registry + profile tags → per-phase topological order

Execution:
    for each phase (hard barrier between phases):
        already done?           → Skipped(already_done)
        a dependency failed?    → Skipped(dependency_failed)
        dependency not in run
        and never succeeded?    → Skipped(dependency_missing)
        dependency unfinished?  → Blocked, re-checked as steps finish
        otherwise               → Running on the worker pool
                                → ledger write, then Succeeded/Failed

Only the scheduler thread mutates ExecutionRecords. Workers return a
StepOutcome; the ledger write for a step happens after its body returns.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Protocol

from src.core.engine.dag import check_references, order_phase, partition_by_phase
from src.core.errors import LedgerError
from src.core.models.execution import ExecutionRecord, RunReport, SkipReason, StepStatus
from src.core.models.step import StepDescriptor
from src.core.persistence.success_ledger import SuccessLedger
from src.core.services.env_contract import EnvCheck

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[ExecutionRecord, StepStatus], None]


class Runner(Protocol):
    """What the scheduler needs to execute a step."""

    def check_env(self, step: StepDescriptor) -> EnvCheck: ...

    def run(self, step: StepDescriptor) -> Any: ...


# ═══════════════════════════════════════════════════════════════════
#  Planning
# ═══════════════════════════════════════════════════════════════════


@dataclass
class PhasePlan:
    phase: int
    phase_name: str
    steps: list[StepDescriptor] = field(default_factory=list)


@dataclass
class ExecutionPlan:
    """Ordered phases of the selected steps."""

    phases: list[PhasePlan] = field(default_factory=list)
    registry: dict[str, StepDescriptor] = field(default_factory=dict)

    @property
    def steps(self) -> list[StepDescriptor]:
        """Flat execution order."""
        return [s for p in self.phases for s in p.steps]

    @property
    def ids(self) -> list[str]:
        return [s.id for s in self.steps]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": len(self.steps),
            "phases": [
                {
                    "phase": p.phase,
                    "phase_name": p.phase_name,
                    "steps": [
                        {"id": s.id, "name": s.name, "depends_on": sorted(s.depends_on)}
                        for s in p.steps
                    ],
                }
                for p in self.phases
            ],
        }


def select_steps(
    descriptors: Iterable[StepDescriptor],
    tags: set[str] | None,
) -> list[StepDescriptor]:
    """Steps belonging to a profile (every step when ``tags`` is None)."""
    steps = list(descriptors)
    if tags is None:
        return steps
    return [s for s in steps if s.matches_tags(tags)]


def build_plan(
    descriptors: Iterable[StepDescriptor],
    tags: set[str] | None = None,
) -> ExecutionPlan:
    """Turn a registry into a per-phase ordered plan.

    Raises:
        UnknownDependency: A step depends on an id outside the registry.
        PhaseOrderViolation: A step depends on a later phase.
        DependencyCycle: Steps within a phase depend on each other in a loop.
    """
    registry = {s.id: s for s in descriptors}
    selected = select_steps(registry.values(), tags)
    check_references(selected, registry)

    plan = ExecutionPlan(registry=registry)
    for phase, steps in partition_by_phase(selected).items():
        ordered = order_phase(phase, steps)
        phase_name = next((s.phase_name for s in ordered if s.phase_name), "")
        plan.phases.append(PhasePlan(phase=phase, phase_name=phase_name, steps=ordered))

    logger.debug(
        "Plan: %d steps in %d phases", len(plan.steps), len(plan.phases)
    )
    return plan


# ═══════════════════════════════════════════════════════════════════
#  Execution
# ═══════════════════════════════════════════════════════════════════

_READY = "ready"
_WAIT = "wait"


class Scheduler:
    """Drives an ExecutionPlan, consulting the ledger and the runner.

    Args:
        ledger: Durable success markers.
        runner: Executes step bodies (and checks their env contract).
        workers: Worker pool size for steps within a phase.
        cancel_event: Set to stop launching steps and abort in-flight work.
        on_transition: Called with (record, previous_status) per transition.
        dry_run: Validate and report, never run bodies or write state.
        force: Ignore prior success markers.
    """

    def __init__(
        self,
        ledger: SuccessLedger,
        runner: Runner,
        *,
        workers: int | None = None,
        cancel_event: threading.Event | None = None,
        on_transition: TransitionCallback | None = None,
        dry_run: bool = False,
        force: bool = False,
    ):
        self._ledger = ledger
        self._runner = runner
        self._workers = max(1, workers or os.cpu_count() or 1)
        self._cancel = cancel_event or threading.Event()
        self._on_transition = on_transition
        self._dry_run = dry_run
        self._force = force
        self._records: dict[str, ExecutionRecord] = {}

    def execute(self, plan: ExecutionPlan) -> RunReport:
        """Run every phase of ``plan`` and return the aggregate report."""
        self._records = {s.id: ExecutionRecord(step_id=s.id) for s in plan.steps}
        report = RunReport(records=self._records, dry_run=self._dry_run)

        for phase in plan.phases:
            if self._cancel.is_set():
                break
            logger.info(
                "Phase %d%s: %d steps",
                phase.phase,
                f" ({phase.phase_name})" if phase.phase_name else "",
                len(phase.steps),
            )
            self._run_phase(phase.steps)

        report.cancelled = self._cancel.is_set()
        logger.info("Run finished: %s%s", report.summary_line(),
                    " (cancelled)" if report.cancelled else "")
        return report

    # ── Phase loop ──────────────────────────────────────────────

    def _run_phase(self, steps: list[StepDescriptor]) -> None:
        pending = list(steps)
        running: dict[Future, StepDescriptor] = {}

        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="step") as pool:
            while pending or running:
                if not self._cancel.is_set():
                    pending = self._dispatch(pending, running, pool)

                if not running:
                    if self._cancel.is_set() or not pending:
                        break
                    # Unreachable for an acyclic phase: something is always ready
                    raise RuntimeError(
                        f"Scheduler stalled with pending steps: {[s.id for s in pending]}"
                    )

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    step = running.pop(future)
                    self._finish(step, future)

        # Cancelled: unstarted steps are left as never having started
        for step in pending:
            record = self._records[step.id]
            if record.status == StepStatus.BLOCKED:
                self._move(record, StepStatus.PENDING)

    def _dispatch(
        self,
        pending: list[StepDescriptor],
        running: dict[Future, StepDescriptor],
        pool: ThreadPoolExecutor,
    ) -> list[StepDescriptor]:
        """Resolve every pending step that can be decided now.

        Returns the steps still waiting.
        """
        still_pending: list[StepDescriptor] = []
        for step in pending:
            record = self._records[step.id]

            if not self._force and self._ledger.has_succeeded(step.id):
                self._skip(record, SkipReason.ALREADY_DONE)
                continue

            decision = self._dependency_state(step)
            if decision in (SkipReason.DEPENDENCY_FAILED, SkipReason.DEPENDENCY_MISSING):
                self._skip(record, decision)
                continue

            if decision == _WAIT:
                if record.status == StepStatus.PENDING:
                    self._move(record, StepStatus.BLOCKED)
                still_pending.append(step)
                continue

            # Dependencies satisfied: Blocked no longer applies, even if the pool is full
            if record.status == StepStatus.BLOCKED:
                self._move(record, StepStatus.PENDING)

            if len(running) >= self._workers:
                still_pending.append(step)
                continue

            if self._dry_run:
                check = self._runner.check_env(step)
                error = check.error
                self._skip(record, SkipReason.DRY_RUN, error=error)
                continue

            self._move(record, StepStatus.RUNNING)
            if self._force:
                # A forced re-run that does not finish must not keep the earlier success
                try:
                    self._ledger.clear(step.id)
                except LedgerError as e:
                    self._move(record, StepStatus.FAILED, error_kind=e.kind, error_message=str(e))
                    continue
            running[pool.submit(self._runner.run, step)] = step

        return still_pending

    def _dependency_state(self, step: StepDescriptor) -> str:
        """Classify ``step``'s dependencies: ready, wait, or a skip reason."""
        waiting = False
        for dep in sorted(step.depends_on):
            record = self._records.get(dep)
            if record is None:
                # Outside this run: only a prior success counts
                if not self._ledger.has_succeeded(dep):
                    logger.info("%s: dependency %s is not selected and never succeeded", step.id, dep)
                    return SkipReason.DEPENDENCY_MISSING
                continue
            if record.blocks_dependents:
                return SkipReason.DEPENDENCY_FAILED
            if not record.satisfies_dependents:
                waiting = True
        return _WAIT if waiting else _READY

    def _finish(self, step: StepDescriptor, future: Future) -> None:
        record = self._records[step.id]
        try:
            outcome = future.result()
        except Exception as e:
            # The runner captures step errors; this is a runner bug
            logger.exception("%s: runner raised", step.id)
            self._move(record, StepStatus.FAILED, error_kind=type(e).__name__, error_message=str(e))
            return

        record.install_attempts = dict(outcome.install_attempts)

        if outcome.cancelled:
            # Never recorded: the next run starts this step from scratch
            self._move(record, StepStatus.FAILED, error_kind="Cancelled",
                       error_message=outcome.error_message or "Cancelled")
            return

        status = StepStatus.SUCCEEDED if outcome.ok else StepStatus.FAILED
        try:
            self._ledger.record(step.id, status, error=outcome.error_message)
        except LedgerError as e:
            self._move(record, StepStatus.FAILED, error_kind=e.kind, error_message=str(e))
            return

        if outcome.ok:
            self._move(record, StepStatus.SUCCEEDED)
        else:
            self._move(record, StepStatus.FAILED,
                       error_kind=outcome.error_kind, error_message=outcome.error_message)

    # ── Transitions ─────────────────────────────────────────────

    def _skip(self, record: ExecutionRecord, reason: SkipReason, error: Exception | None = None) -> None:
        if record.status == StepStatus.BLOCKED:
            self._move(record, StepStatus.PENDING)
        self._move(
            record,
            StepStatus.SKIPPED,
            reason=reason,
            error_kind=getattr(error, "kind", None) if error else None,
            error_message=str(error) if error else None,
        )

    def _move(self, record: ExecutionRecord, status: StepStatus, **kwargs: Any) -> None:
        previous = record.transition(status, **kwargs)
        label = record.label()
        if record.error_message and status in (StepStatus.FAILED, StepStatus.SKIPPED):
            logger.info("%s: %s → %s (%s)", record.step_id, previous, label, record.error_message)
        else:
            logger.info("%s: %s → %s", record.step_id, previous, label)
        if self._on_transition is not None:
            self._on_transition(record, previous)
