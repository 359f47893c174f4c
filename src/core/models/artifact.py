"""
Artifact and cache models — things that outlive a single run.

CacheEntries are written by the package cache; GeneratedArtifacts
describe files produced through the file generation guard.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from src.core.models.step import PackageSpec


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class CacheEntry(BaseModel):
    """A package archive stored in the local cache."""

    package_spec: PackageSpec
    local_archive_path: str
    content_hash: str               # sha256 hex of the archive bytes
    fetched_at: str = Field(default_factory=_now_iso)


class WriteMode(StrEnum):
    """How the guard treats an existing target."""

    CREATE_IF_ABSENT = "create_if_absent"
    APPEND_ONCE = "append_once"
    OVERWRITE = "overwrite"


class WriteOutcome(StrEnum):
    """What the guard actually did."""

    CREATED = "created"
    SKIPPED_EXISTING = "skipped_existing"
    APPENDED = "appended"
    SKIPPED_MARKER_PRESENT = "skipped_marker_present"
    OVERWRITTEN = "overwritten"
    UNCHANGED = "unchanged"
    DRY_RUN = "dry_run"


class GeneratedArtifact(BaseModel):
    """A file a step wants produced, and the mode to produce it with."""

    path: str
    mode: WriteMode = WriteMode.CREATE_IF_ABSENT
    marker_token: str | None = None


class WriteResult(BaseModel):
    """Result of a single guarded write."""

    path: str
    outcome: WriteOutcome
    backup_path: str | None = None

    @property
    def changed(self) -> bool:
        return self.outcome in (
            WriteOutcome.CREATED,
            WriteOutcome.APPENDED,
            WriteOutcome.OVERWRITTEN,
        )
