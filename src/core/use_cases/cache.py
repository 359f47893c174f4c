"""
Cache use cases — inspect, clear and pre-populate the package cache.
"""

from __future__ import annotations

from pathlib import Path

from src.core.errors import ForgeError
from src.core.models.step import PackageSpec
from src.core.services.packages import PackageBackend, PackageCache
from src.core.use_cases.run import build_manager, plan_steps
from src.core.use_cases.workspace import open_workspace


def cache_status(target_root: Path | None = None, config_path: Path | None = None) -> dict:
    try:
        ws = open_workspace(target_root, config_path, load_steps=False)
    except ForgeError as e:
        return {"error": str(e)}
    return PackageCache(ws.cache_dir).status()


def cache_clear(
    name: str | None = None,
    target_root: Path | None = None,
    config_path: Path | None = None,
) -> dict:
    """Explicitly invalidate cached archives (one package name, or all)."""
    try:
        ws = open_workspace(target_root, config_path, load_steps=False)
    except ForgeError as e:
        return {"error": str(e)}
    removed = PackageCache(ws.cache_dir).clear(name)
    return {"removed": removed, "name": name}


def cache_warm(
    target_root: Path | None = None,
    profile: str | None = None,
    config_path: Path | None = None,
    backend: PackageBackend | None = None,
) -> dict:
    """Fetch archives for every package declared by the selected steps."""
    try:
        ws, plan = plan_steps(target_root, profile, config_path)
    except ForgeError as e:
        return {"error": str(e)}

    seen: dict[str, PackageSpec] = {}
    for step in plan.steps:
        for spec in step.packages:
            seen.setdefault(spec.cache_key, spec)

    manager = build_manager(ws, backend=backend)
    preflight = manager.preflight_check(seen.values())
    result = manager.warm_cache(seen.values())
    result["already_cached"] = sorted(preflight.cached)
    return result
