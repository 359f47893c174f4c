"""
Domain models — Pydantic types for the orchestrator.

All models are re-exported here for convenient access:

    from src.core.models import StepDescriptor, ExecutionRecord, RunReport
"""

from src.core.models.artifact import (
    CacheEntry,
    GeneratedArtifact,
    WriteMode,
    WriteOutcome,
    WriteResult,
)
from src.core.models.config import ForgeConfig, InstallSettings
from src.core.models.execution import (
    ExecutionRecord,
    IllegalTransition,
    RunReport,
    SkipReason,
    StepStatus,
)
from src.core.models.step import PackageSpec, RequiredVar, StepDescriptor

__all__ = [
    # artifact.py
    "CacheEntry",
    "GeneratedArtifact",
    "WriteMode",
    "WriteOutcome",
    "WriteResult",
    # config.py
    "ForgeConfig",
    "InstallSettings",
    # execution.py
    "ExecutionRecord",
    "IllegalTransition",
    "RunReport",
    "SkipReason",
    "StepStatus",
    # step.py
    "PackageSpec",
    "RequiredVar",
    "StepDescriptor",
]
