"""
Execution models — per-run step records and the run report.

ExecutionRecords are created by the scheduler at the start of a run and
only the scheduler moves them through the state machine:

    Pending → Blocked → Pending → Running → {Succeeded | Failed}
    Pending → Skipped   (already done, dependency failed/missing, dry run)
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class StepStatus(StrEnum):
    """Lifecycle states of an ExecutionRecord."""

    PENDING = "pending"
    BLOCKED = "blocked"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(StrEnum):
    """Why a step reached Skipped without running."""

    ALREADY_DONE = "already_done"
    DEPENDENCY_FAILED = "dependency_failed"
    DEPENDENCY_MISSING = "dependency_missing"
    DRY_RUN = "dry_run"


TERMINAL_STATES = frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED})

_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.BLOCKED, StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.BLOCKED: frozenset({StepStatus.PENDING}),
    StepStatus.RUNNING: frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED}),
}


class IllegalTransition(RuntimeError):
    """Raised when a record is moved along an edge the state machine forbids."""


class ExecutionRecord(BaseModel):
    """One record per step per run."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    skip_reason: SkipReason | None = None
    started_at: str | None = None
    finished_at: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    install_attempts: dict[str, int] = Field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def blocks_dependents(self) -> bool:
        """Whether dependents of this step must be skipped."""
        if self.status == StepStatus.FAILED:
            return True
        return self.status == StepStatus.SKIPPED and self.skip_reason in (
            SkipReason.DEPENDENCY_FAILED,
            SkipReason.DEPENDENCY_MISSING,
        )

    @property
    def satisfies_dependents(self) -> bool:
        """Whether dependents may proceed past this step."""
        if self.status == StepStatus.SUCCEEDED:
            return True
        return self.status == StepStatus.SKIPPED and self.skip_reason in (
            SkipReason.ALREADY_DONE,
            SkipReason.DRY_RUN,
        )

    def transition(
        self,
        status: StepStatus,
        *,
        reason: SkipReason | None = None,
        error_kind: str | None = None,
        error_message: str | None = None,
    ) -> StepStatus:
        """Move to ``status``; raises IllegalTransition on a forbidden edge.

        Returns the previous status.
        """
        previous = self.status
        if status not in _TRANSITIONS.get(previous, frozenset()):
            raise IllegalTransition(
                f"{self.step_id}: illegal transition {previous} → {status}"
            )
        if status == StepStatus.SKIPPED and reason is None:
            raise IllegalTransition(f"{self.step_id}: skipped without a reason")

        self.status = status
        if status == StepStatus.RUNNING:
            self.started_at = _now_iso()
        if status in TERMINAL_STATES:
            self.finished_at = _now_iso()
        if reason is not None:
            self.skip_reason = reason
        if error_kind is not None:
            self.error_kind = error_kind
        if error_message is not None:
            self.error_message = error_message
        return previous

    def label(self) -> str:
        """Human-readable status, e.g. ``skipped(already_done)``."""
        if self.status == StepStatus.SKIPPED and self.skip_reason:
            return f"skipped({self.skip_reason})"
        return str(self.status)


class RunReport(BaseModel):
    """Aggregate outcome of one orchestrator run."""

    records: dict[str, ExecutionRecord] = Field(default_factory=dict)
    dry_run: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.records.values() if r.status == StepStatus.SUCCEEDED)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.records.values() if r.status == StepStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.records.values() if r.status == StepStatus.FAILED)

    @property
    def dry_run_problems(self) -> list[ExecutionRecord]:
        return [
            r for r in self.records.values()
            if r.skip_reason == SkipReason.DRY_RUN and r.error_message
        ]

    @property
    def first_error(self) -> ExecutionRecord | None:
        """The earliest-finishing failed record, for remediation."""
        failed = [r for r in self.records.values() if r.status == StepStatus.FAILED]
        if not failed:
            problems = self.dry_run_problems
            return problems[0] if problems else None
        return min(failed, key=lambda r: r.finished_at or "")

    @property
    def all_ok(self) -> bool:
        if self.cancelled or self.dry_run_problems:
            return False
        return not any(r.blocks_dependents for r in self.records.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.all_ok else 1

    def summary_line(self) -> str:
        return (
            f"{self.succeeded} succeeded, {self.skipped} skipped, {self.failed} failed"
        )

    def to_dict(self) -> dict[str, Any]:
        first = self.first_error
        return {
            "summary": self.summary_line(),
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "exit_code": self.exit_code,
            "first_error": first.model_dump(mode="json") if first else None,
            "steps": [r.model_dump(mode="json") for r in self.records.values()],
        }
