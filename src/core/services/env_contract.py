"""
Environment contract — checks a step's required inputs before it runs.

Missing variables are collected, not reported one at a time, so the
operator gets the whole remediation list in a single message.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from src.core.errors import MissingVariables
from src.core.models.step import StepDescriptor

logger = logging.getLogger(__name__)


@dataclass
class EnvCheck:
    """Result of validating one step's environment contract."""

    step_id: str
    resolved: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    defaulted: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing

    @property
    def error(self) -> MissingVariables | None:
        if self.ok:
            return None
        return MissingVariables(self.step_id, self.missing)


def validate(descriptor: StepDescriptor, env: Mapping[str, str]) -> EnvCheck:
    """Validate ``descriptor.required_vars`` against ``env``.

    Present values pass through; absent ones take their declared default;
    absent ones without a default are accumulated into ``missing``. A
    variable set to the empty string counts as absent.

    Args:
        descriptor: The step being gated.
        env: Variables visible to the step.

    Returns:
        EnvCheck with the resolved values for every required variable.
    """
    check = EnvCheck(step_id=descriptor.id)

    for var in descriptor.required_vars:
        value = env.get(var.name)
        if value:
            check.resolved[var.name] = value
        elif var.has_default:
            check.resolved[var.name] = var.default or ""
            check.defaulted.append(var.name)
        else:
            check.missing.append(var.name)

    if check.defaulted:
        logger.debug("%s: defaults applied for %s", descriptor.id, ", ".join(check.defaulted))
    if check.missing:
        logger.info("%s: missing %s", descriptor.id, ", ".join(check.missing))
    return check
