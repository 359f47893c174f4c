"""
Lint use case — validate every step header and the dependency graph.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from src.core.config.step_loader import discover_step_files, load_all
from src.core.engine.scheduler import build_plan
from src.core.errors import ConfigError, MalformedMetadata, PlanError
from src.core.use_cases.workspace import open_workspace


@dataclass
class LintResult:
    """Result of step header validation."""

    steps_root: Path | None = None
    files_scanned: int = 0
    steps_loaded: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "steps_root": str(self.steps_root) if self.steps_root else None,
            "files_scanned": self.files_scanned,
            "steps_loaded": self.steps_loaded,
            "errors": self.errors,
            "warnings": self.warnings,
        }


def lint_steps(
    target_root: Path | None = None,
    config_path: Path | None = None,
    steps_dir: Path | None = None,
) -> LintResult:
    """Report all malformed headers at once, then plan errors."""
    result = LintResult()

    try:
        ws = open_workspace(target_root, config_path, steps_dir, load_steps=False)
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    result.steps_root = ws.steps_root
    if not ws.steps_root.is_dir():
        result.errors.append(f"Steps directory not found: {ws.steps_root}")
        return result

    result.files_scanned = len(discover_step_files(ws.steps_root))
    try:
        steps = load_all(ws.steps_root)
    except MalformedMetadata as e:
        result.errors.extend(e.problems)
        return result

    result.steps_loaded = len(steps)
    try:
        build_plan(steps)
    except PlanError as e:
        result.errors.append(f"{e.kind}: {e}")

    for step in steps:
        if not step.profile_tags:
            result.warnings.append(f"{step.id}: no profile_tags (only selected without a profile)")

    for name, tags in ws.config.profiles.items():
        if not any(s.matches_tags(set(tags)) for s in steps):
            result.warnings.append(f"Profile '{name}' selects no steps")

    return result
