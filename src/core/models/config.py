"""
ForgeConfig — the optional stackforge.yml project configuration.

Every field has a default so a target without a config file still
runs with sensible behaviour.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class InstallSettings(BaseModel):
    """Retry and timeout settings for package-manager calls."""

    attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    timeout: int = Field(default=300, gt=0)


class ForgeConfig(BaseModel):
    """Root configuration — loaded from stackforge.yml."""

    version: int = 1

    steps_dir: str = "steps"
    state_dir: str = ".stackforge"
    cache_dir: str | None = None

    package_manager: Literal["pnpm", "npm"] = "pnpm"
    workers: int | None = Field(default=None, ge=1)
    step_timeout: int = Field(default=600, gt=0)
    install: InstallSettings = Field(default_factory=InstallSettings)

    profiles: dict[str, list[str]] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)

    def profile_tags(self, profile: str | None) -> set[str] | None:
        """Resolve a profile name to its tag set (None = every step)."""
        if not profile:
            return None
        return set(self.profiles.get(profile, [profile]))
