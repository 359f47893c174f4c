"""
Package backends — the thin layer that actually talks to pnpm/npm.

A backend knows how to add a package to the target project, pack an
archive for the cache, and read back what the manifest declares and
what is installed. Failures are raised as TransientInstallError or
FatalInstallError based on the package manager's stderr.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import threading
from pathlib import Path
from typing import Protocol

from src.core.errors import FatalInstallError, InstallCancelled, TransientInstallError
from src.core.models.step import PackageKind, PackageSpec
from src.core.services.process import CommandResult, run_command

logger = logging.getLogger(__name__)

MANIFEST_FILE = "package.json"

_SECTIONS: dict[str, str] = {"prod": "dependencies", "dev": "devDependencies"}

# Network-level failures that a retry can fix
_TRANSIENT_PATTERNS = [
    r"ETIMEDOUT",
    r"ECONNRESET",
    r"ECONNREFUSED",
    r"EAI_AGAIN",
    r"ENOTFOUND",
    r"ENETUNREACH",
    r"socket hang up",
    r"network (?:error|timeout)",
    r"ERR_PNPM_META_FETCH_FAIL",
    r"ERR_PNPM_FETCH_5\d\d",
    r"\b50[234]\b.*(?:Bad Gateway|Service Unavailable|Gateway Time-?out)",
    r"ERR_SOCKET_TIMEOUT",
]

# Failures a retry cannot fix
_FATAL_PATTERNS = [
    r"E404",
    r"ERR_PNPM_FETCH_404",
    r"404 Not Found",
    r"ERR_PNPM_NO_MATCHING_VERSION",
    r"No matching version",
    r"ETARGET",
    r"ERESOLVE",
    r"ERR_PNPM_PEER_DEP_ISSUES",
    r"conflicting peer dependency",
    r"EINTEGRITY",
    r"ERR_PNPM_BAD_PM_VERSION",
]


def classify_failure(result: CommandResult, package: str) -> TransientInstallError | FatalInstallError:
    """Map a failed package-manager call to a retryable or fatal error."""
    if result.timed_out:
        return TransientInstallError(f"{package}: package manager timed out", package=package)

    stderr = result.stderr or result.stdout
    for pattern in _FATAL_PATTERNS:
        if re.search(pattern, stderr, re.IGNORECASE):
            return FatalInstallError(
                f"{package}: {_first_line(stderr, pattern)}", package=package, stderr=stderr
            )
    for pattern in _TRANSIENT_PATTERNS:
        if re.search(pattern, stderr, re.IGNORECASE):
            return TransientInstallError(
                f"{package}: {_first_line(stderr, pattern)}", package=package, stderr=stderr
            )
    return FatalInstallError(
        f"{package}: package manager failed ({result.describe()})",
        package=package,
        stderr=stderr,
    )


def _first_line(text: str, pattern: str) -> str:
    for line in text.splitlines():
        if re.search(pattern, line, re.IGNORECASE):
            return line.strip()[:200]
    return text.strip().splitlines()[0][:200] if text.strip() else "failed"


class PackageBackend(Protocol):
    """What the installation manager needs from a package manager."""

    name: str

    def add(
        self,
        target: str,
        kind: PackageKind,
        project_dir: Path,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> None: ...

    def pack(
        self,
        spec: PackageSpec,
        dest_dir: Path,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> Path: ...

    def declared_constraint(self, project_dir: Path, spec: PackageSpec) -> str | None: ...

    def installed_version(self, project_dir: Path, name: str) -> str | None: ...


class NodePackageBackend:
    """pnpm (preferred) or npm against a package.json project."""

    def __init__(self, manager: str = "pnpm", executable: str | None = None):
        if manager not in ("pnpm", "npm"):
            raise ValueError(f"Unsupported package manager: {manager}")
        self.name = manager
        self._exe = executable or manager

    def available(self) -> bool:
        return shutil.which(self._exe) is not None

    def _command_env(self) -> dict[str, str]:
        env = os.environ.copy()
        # Keep CI-style non-interactive output
        env.setdefault("CI", "true")
        return env

    def _run(
        self,
        cmd: list[str],
        package: str,
        cwd: Path,
        timeout: float,
        cancel_event: threading.Event | None,
    ) -> CommandResult:
        try:
            result = run_command(
                cmd,
                cwd=cwd,
                env=self._command_env(),
                timeout=timeout,
                cancel_event=cancel_event,
            )
        except FileNotFoundError as e:
            raise FatalInstallError(
                f"{self.name} not available: {e}", package=package
            ) from e
        if result.cancelled:
            raise InstallCancelled(f"{package}: cancelled", package=package)
        if not result.ok:
            raise classify_failure(result, package)
        return result

    def add(
        self,
        target: str,
        kind: PackageKind,
        project_dir: Path,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if self.name == "pnpm":
            cmd = [self._exe, "add"] + (["-D"] if kind == "dev" else []) + [target]
        else:
            cmd = [self._exe, "install", "--save-dev" if kind == "dev" else "--save", target]
        self._run(cmd, target, project_dir, timeout, cancel_event)

    def pack(
        self,
        spec: PackageSpec,
        dest_dir: Path,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> Path:
        dest_dir.mkdir(parents=True, exist_ok=True)
        # npm pack works for both managers and needs no project
        cmd = ["npm", "pack", spec.install_target, "--pack-destination", str(dest_dir)]
        result = self._run(cmd, spec.install_target, dest_dir, timeout, cancel_event)
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise FatalInstallError(f"{spec}: npm pack produced no archive", package=spec.name)
        archive = dest_dir / lines[-1]
        if not archive.is_file():
            raise FatalInstallError(f"{spec}: archive not found at {archive}", package=spec.name)
        return archive

    def declared_constraint(self, project_dir: Path, spec: PackageSpec) -> str | None:
        manifest = _read_json(project_dir / MANIFEST_FILE)
        if manifest is None:
            return None
        section = manifest.get(_SECTIONS[spec.kind]) or {}
        value = section.get(spec.name)
        return str(value) if value is not None else None

    def installed_version(self, project_dir: Path, name: str) -> str | None:
        meta = _read_json(project_dir / "node_modules" / name / MANIFEST_FILE)
        if meta is None:
            return None
        version = meta.get("version")
        return str(version) if version else None


def _read_json(path: Path) -> dict | None:
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Cannot read %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None
