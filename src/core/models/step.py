"""
Step models — the immutable descriptors parsed from step headers.

A StepDescriptor is created once per process start by the metadata
parser and never mutated afterwards (frozen pydantic models).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PackageKind = Literal["prod", "dev"]


class PackageSpec(BaseModel):
    """A package requirement declared by a step."""

    model_config = ConfigDict(frozen=True)

    name: str
    version_constraint: str = ""
    kind: PackageKind = "prod"

    @property
    def install_target(self) -> str:
        """Argument handed to the package manager (``name@constraint``)."""
        if self.version_constraint:
            return f"{self.name}@{self.version_constraint}"
        return self.name

    @property
    def cache_key(self) -> str:
        return self.install_target

    def __str__(self) -> str:
        return self.install_target


class RequiredVar(BaseModel):
    """A required environment input, optionally with a default."""

    model_config = ConfigDict(frozen=True)

    name: str
    default: str | None = None

    @property
    def has_default(self) -> bool:
        return self.default is not None


class StepDescriptor(BaseModel):
    """Declarative description of one generator step."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    phase: int
    phase_name: str = ""
    profile_tags: frozenset[str] = Field(default_factory=frozenset)
    depends_on: frozenset[str] = Field(default_factory=frozenset)
    required_vars: tuple[RequiredVar, ...] = ()
    packages: tuple[PackageSpec, ...] = ()
    timeout: int | None = None
    source_path: Path | None = None

    @property
    def prod_packages(self) -> list[PackageSpec]:
        return [p for p in self.packages if p.kind == "prod"]

    @property
    def dev_packages(self) -> list[PackageSpec]:
        return [p for p in self.packages if p.kind == "dev"]

    def matches_tags(self, tags: set[str] | frozenset[str]) -> bool:
        """Whether this step belongs to a profile selecting ``tags``."""
        return "all" in self.profile_tags or bool(self.profile_tags & tags)
