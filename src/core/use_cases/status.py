"""
Status use case — ledger state per registered step, and ledger resets.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from src.core.errors import ForgeError
from src.core.models.execution import StepStatus
from src.core.use_cases.workspace import open_workspace


@dataclass
class StepState:
    """Ledger view of one step."""

    id: str
    name: str
    phase: int
    done: bool = False
    completed_at: str | None = None
    last_failure: str | None = None
    last_failed_at: str | None = None

    @property
    def state(self) -> str:
        if self.done:
            return "done"
        if self.last_failed_at:
            return "failed"
        return "never run"


@dataclass
class StatusResult:
    """Ledger status for every registered step."""

    target_root: Path | None = None
    steps: list[StepState] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def completed(self) -> int:
        return sum(1 for s in self.steps if s.done)

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {
            "target_root": str(self.target_root),
            "completed": self.completed,
            "total": len(self.steps),
            "steps": [
                {
                    "id": s.id,
                    "name": s.name,
                    "phase": s.phase,
                    "state": s.state,
                    "completed_at": s.completed_at,
                    "last_failure": s.last_failure,
                    "last_failed_at": s.last_failed_at,
                }
                for s in self.steps
            ],
            "orphaned": self.orphaned,
        }


def get_status(
    target_root: Path | None = None,
    config_path: Path | None = None,
    steps_dir: Path | None = None,
) -> StatusResult:
    """Report which registered steps have completed.

    Markers for ids no longer in the registry are listed as ``orphaned``.
    """
    result = StatusResult()
    try:
        ws = open_workspace(target_root, config_path, steps_dir)
    except ForgeError as e:
        result.error = str(e)
        return result

    result.target_root = ws.target_root
    ledger = ws.ledger()

    last_failure: dict[str, tuple[str, str | None]] = {}
    for event in ledger.history():
        if event.status == StepStatus.FAILED:
            last_failure[event.step_id] = (event.recorded_at, event.error)

    for step in ws.steps:
        state = StepState(id=step.id, name=step.name, phase=step.phase)
        marker = ledger.marker(step.id)
        if marker is not None:
            state.done = True
            state.completed_at = marker.recorded_at
        if step.id in last_failure:
            state.last_failed_at, state.last_failure = last_failure[step.id]
        result.steps.append(state)

    known = {s.id for s in ws.steps}
    result.orphaned = sorted(ledger.succeeded_ids() - known)
    return result


def reset_steps(
    step_ids: list[str],
    *,
    clear_all: bool = False,
    target_root: Path | None = None,
    config_path: Path | None = None,
) -> dict:
    """Forget success markers so the next run executes those steps again."""
    try:
        ws = open_workspace(target_root, config_path, load_steps=False)
    except ForgeError as e:
        return {"error": str(e)}

    ledger = ws.ledger()
    if clear_all:
        return {"cleared": ledger.clear_all(), "all": True}

    cleared = [sid for sid in step_ids if ledger.clear(sid)]
    missing = [sid for sid in step_ids if sid not in cleared]
    return {"cleared": cleared, "not_found": missing}
