"""
Test helpers — descriptor builders, step file writer, fake package backend.
"""

from __future__ import annotations

import json
import textwrap
import threading
import time
from pathlib import Path

from src.core.models.step import PackageKind, PackageSpec, RequiredVar, StepDescriptor
from src.core.reliability.retry import RetryPolicy
from src.core.services.packages import NodePackageBackend

# ── Builders ────────────────────────────────────────────────────


def make_step(
    step_id: str,
    phase: int = 0,
    deps: tuple[str, ...] = (),
    tags: tuple[str, ...] = ("all",),
    required: tuple[str, ...] = (),
    packages: tuple[PackageSpec, ...] = (),
    source_path: Path | None = None,
) -> StepDescriptor:
    """Build a StepDescriptor without going through the header parser."""
    return StepDescriptor(
        id=step_id,
        name=step_id.upper(),
        phase=phase,
        profile_tags=frozenset(tags),
        depends_on=frozenset(deps),
        required_vars=tuple(RequiredVar(name=n) for n in required),
        packages=packages,
        source_path=source_path,
    )


def write_step(directory: Path, filename: str, header: str, body: str = "") -> Path:
    """Write a step file: ``header`` is YAML, commented into a #!meta block."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    lines = ["#!meta"] + [f"# {line}" if line else "#" for line in textwrap.dedent(header).strip().splitlines()]
    lines.append("#!endmeta")
    if path.suffix == ".sh":
        lines.insert(0, "#!/usr/bin/env bash")
    path.write_text("\n".join(lines) + "\n" + textwrap.dedent(body).lstrip("\n"))
    return path


def fast_policy(attempts: int = 3) -> RetryPolicy:
    """Retry policy with no backoff wait."""
    return RetryPolicy(max_attempts=attempts, base_delay=0, max_delay=0, jitter=0)


# ── Fake package backend ────────────────────────────────────────


class FakeBackend(NodePackageBackend):
    """Package backend that edits package.json and node_modules directly.

    ``failures`` maps a package name to exceptions raised by successive
    ``add`` calls before one succeeds. ``versions`` sets the version that
    gets "installed" (default 1.0.0).
    """

    def __init__(
        self,
        versions: dict[str, str] | None = None,
        failures: dict[str, list[Exception]] | None = None,
        delay: float = 0.0,
    ):
        super().__init__("pnpm")
        self.name = "fake"
        self.versions = versions or {}
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[str] = []
        self.packed: list[str] = []
        self.max_active = 0
        self._active = 0
        self._guard = threading.Lock()
        self._archives: dict[str, str] = {}

    def add(self, target, kind: PackageKind, project_dir: Path, *, timeout, cancel_event=None) -> None:
        with self._guard:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            self.calls.append(target)
            name = self._archives.get(Path(target).name) or _name_of(target)
            queue = self.failures.get(name)
            if queue:
                raise queue.pop(0)
            if self.delay:
                time.sleep(self.delay)
            self._install(project_dir, name, kind)
        finally:
            with self._guard:
                self._active -= 1

    def pack(self, spec: PackageSpec, dest_dir: Path, *, timeout, cancel_event=None) -> Path:
        dest_dir.mkdir(parents=True, exist_ok=True)
        version = self.versions.get(spec.name, "1.0.0")
        archive = dest_dir / f"{spec.name.replace('/', '-').lstrip('@')}-{version}.tgz"
        archive.write_bytes(f"{spec.name}@{version}".encode())
        self._archives[archive.name] = spec.name
        self.packed.append(spec.cache_key)
        return archive

    def _install(self, project_dir: Path, name: str, kind: PackageKind) -> None:
        version = self.versions.get(name, "1.0.0")
        manifest_path = project_dir / "package.json"
        manifest = json.loads(manifest_path.read_text()) if manifest_path.exists() else {}
        # Unsynchronised read-modify-write: overlapping calls would lose entries
        if self.delay:
            time.sleep(self.delay)
        section = "devDependencies" if kind == "dev" else "dependencies"
        manifest.setdefault(section, {})[name] = f"^{version}"
        manifest_path.write_text(json.dumps(manifest, indent=2))

        module_dir = project_dir / "node_modules" / name
        module_dir.mkdir(parents=True, exist_ok=True)
        (module_dir / "package.json").write_text(json.dumps({"name": name, "version": version}))


def _name_of(target: str) -> str:
    at = target.rfind("@")
    return target[:at] if at > 0 else target

