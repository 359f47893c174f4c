"""
Workspace — resolves config, directories and the step registry for a target.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from src.core.config.loader import (
    find_config_file,
    load_config,
    resolve_cache_dir,
    resolve_state_dir,
    resolve_steps_dir,
)
from src.core.config.step_loader import load_all
from src.core.models.config import ForgeConfig
from src.core.models.step import StepDescriptor
from src.core.persistence.success_ledger import SuccessLedger


@dataclass
class Workspace:
    """Resolved locations for one target project."""

    target_root: Path
    config: ForgeConfig
    config_path: Path | None
    steps_root: Path
    state_dir: Path
    cache_dir: Path
    steps: list[StepDescriptor] = field(default_factory=list)

    def ledger(self, dry_run: bool = False) -> SuccessLedger:
        return SuccessLedger(self.state_dir, dry_run=dry_run)

    def step_env(self) -> dict[str, str]:
        """Config ``env`` defaults beneath the process environment."""
        return {**self.config.env, **os.environ}


def open_workspace(
    target_root: Path | None = None,
    config_path: Path | None = None,
    steps_dir: Path | None = None,
    *,
    load_steps: bool = True,
) -> Workspace:
    """Load config and (optionally) the step registry.

    Raises:
        ConfigError: stackforge.yml is invalid.
        MalformedMetadata: A step header is malformed.
    """
    root = (target_root or Path.cwd()).resolve()
    if config_path is None:
        config_path = find_config_file(root)
    config = load_config(config_path)

    ws = Workspace(
        target_root=root,
        config=config,
        config_path=config_path,
        steps_root=steps_dir.resolve() if steps_dir else resolve_steps_dir(config, config_path, root),
        state_dir=resolve_state_dir(config, root),
        cache_dir=resolve_cache_dir(config),
    )
    if load_steps:
        ws.steps = load_all(ws.steps_root)
    return ws
