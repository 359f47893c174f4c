"""
Error taxonomy — every failure the orchestrator can name.

Registry and plan errors are fatal before any step runs. Step-level
errors (missing variables, install failures) are captured into step
outcomes by the step runner and never escape ``Scheduler.execute``.
"""

from __future__ import annotations


class ForgeError(Exception):
    """Base class for all orchestrator errors."""

    kind = "ForgeError"


class ConfigError(ForgeError):
    """Raised when stackforge.yml is invalid or unreadable."""

    kind = "ConfigError"


class MalformedMetadata(ForgeError):
    """A step header is missing required fields or has bad syntax.

    Fatal to registry load: no step runs.
    """

    kind = "MalformedMetadata"

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or [message]


class PlanError(ForgeError):
    """The registry cannot be turned into an execution plan."""

    kind = "PlanError"


class DependencyCycle(PlanError):
    """Steps within a phase depend on each other in a loop."""

    kind = "DependencyCycle"

    def __init__(self, phase: int, members: list[str]):
        self.phase = phase
        self.members = members
        super().__init__(
            f"Dependency cycle in phase {phase}: {' → '.join(members)}"
        )


class UnknownDependency(PlanError):
    """A step depends on an id that is not in the registry."""

    kind = "UnknownDependency"


class PhaseOrderViolation(PlanError):
    """A step depends on a step that runs in a later phase."""

    kind = "PhaseOrderViolation"


class MissingVariables(ForgeError):
    """Required environment inputs are unset (complete list)."""

    kind = "MissingVariables"

    def __init__(self, step_id: str, missing: list[str]):
        self.step_id = step_id
        self.missing = list(missing)
        super().__init__(
            f"{step_id}: missing required variables: {', '.join(self.missing)}"
        )


class InstallError(ForgeError):
    """Base for package installation failures."""

    kind = "InstallError"

    def __init__(self, message: str, package: str = "", stderr: str = ""):
        super().__init__(message)
        self.package = package
        self.stderr = stderr


class TransientInstallError(InstallError):
    """Network failure or timeout — worth retrying."""

    kind = "TransientInstallError"


class FatalInstallError(InstallError):
    """Version conflict, package not found, verification failure."""

    kind = "FatalInstallError"


class InstallCancelled(InstallError):
    """The run was cancelled while an install was in flight."""

    kind = "Cancelled"


class FileGenerationError(ForgeError):
    """Misuse of the file generation guard."""

    kind = "FileGenerationError"


class LedgerError(ForgeError):
    """The success ledger cannot be read or written."""

    kind = "LedgerError"
