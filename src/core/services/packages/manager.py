"""
Package installation manager — cache-first, verified, retried installs.

Every public call is serialized through one lock: the target's manifest
and lockfile are a single shared resource, so concurrent steps never
run two package-manager processes against them at once. Callers do not
see the lock.

Per package, ``install`` does:

    verify (already satisfied? → no-op)
    → verified cache archive, else network target
    → add, retrying transient failures with backoff + jitter
    → verify again (post-install assertion)
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from src.core.errors import (
    FatalInstallError,
    InstallCancelled,
    InstallError,
    TransientInstallError,
)
from src.core.models.step import PackageKind, PackageSpec
from src.core.reliability.retry import RetryCancelled, RetryPolicy
from src.core.services.packages.backend import PackageBackend
from src.core.services.packages.cache import PackageCache
from src.core.services.packages.version import satisfies

logger = logging.getLogger(__name__)


@dataclass
class PreflightResult:
    """Which specs can be served from the cache (read-only check)."""

    cached: set[str] = field(default_factory=set)
    missing: set[str] = field(default_factory=set)


@dataclass
class InstallResult:
    """Outcome of one ``install`` call."""

    kind: PackageKind | None = None
    installed: list[str] = field(default_factory=list)
    already_satisfied: list[str] = field(default_factory=list)
    from_cache: list[str] = field(default_factory=list)
    attempts: dict[str, int] = field(default_factory=dict)
    error: InstallError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "kind": self.kind,
            "installed": self.installed,
            "already_satisfied": self.already_satisfied,
            "from_cache": self.from_cache,
            "attempts": self.attempts,
            "error": str(self.error) if self.error else None,
            "error_kind": self.error.kind if self.error else None,
        }


class PackageInstallManager:
    """Wraps a package backend with cache, verification and bounded retry.

    Args:
        project_dir: Directory holding the target's package.json.
        backend: The package manager implementation.
        cache: Local archive cache (None disables caching).
        policy: Retry policy for transient failures.
        timeout: Per package-manager call, in seconds.
        cancel_event: Shared run cancellation flag.
        dry_run: Log what would be installed, change nothing.
    """

    def __init__(
        self,
        project_dir: Path,
        backend: PackageBackend,
        cache: PackageCache | None = None,
        policy: RetryPolicy | None = None,
        *,
        timeout: float = 300,
        cancel_event: threading.Event | None = None,
        dry_run: bool = False,
    ):
        self._project_dir = project_dir
        self._backend = backend
        self._cache = cache
        self._policy = policy or RetryPolicy()
        self._timeout = timeout
        self._cancel = cancel_event or threading.Event()
        self._dry_run = dry_run
        self._lock = threading.Lock()

    @property
    def backend(self) -> PackageBackend:
        return self._backend

    # ── Preflight ───────────────────────────────────────────────

    def preflight_check(self, specs: Iterable[PackageSpec]) -> PreflightResult:
        """Split specs into cache hits and misses. No network, no writes."""
        result = PreflightResult()
        for spec in specs:
            if self._cache is not None and self._cache.lookup(spec) is not None:
                result.cached.add(spec.cache_key)
            else:
                result.missing.add(spec.cache_key)
        logger.debug(
            "Preflight: %d cached, %d missing", len(result.cached), len(result.missing)
        )
        return result

    # ── Verify ──────────────────────────────────────────────────

    def verify(self, specs: Iterable[PackageSpec]) -> bool:
        """Whether every spec is declared in the manifest and installed
        at a version satisfying its constraint."""
        return all(self._satisfied(spec) for spec in specs)

    def _satisfied(self, spec: PackageSpec) -> bool:
        declared = self._backend.declared_constraint(self._project_dir, spec)
        if declared is None:
            return False
        installed = self._backend.installed_version(self._project_dir, spec.name)
        if installed is None:
            return False
        return satisfies(installed, spec.version_constraint)

    # ── Install ─────────────────────────────────────────────────

    def install(
        self,
        specs: Iterable[PackageSpec],
        kind: PackageKind | None = None,
    ) -> InstallResult:
        """Install ``specs`` (restricted to ``kind`` if given).

        Stops at the first package that cannot be installed; the error is
        carried on the result rather than raised.
        """
        selected = [s for s in specs if kind is None or s.kind == kind]
        result = InstallResult(kind=kind)
        if not selected:
            return result

        with self._lock:
            for spec in selected:
                if self._cancel.is_set():
                    result.error = InstallCancelled(f"{spec}: cancelled", package=spec.name)
                    break

                if self._satisfied(spec):
                    logger.info("Already satisfied: %s", spec)
                    result.already_satisfied.append(spec.cache_key)
                    continue

                if self._dry_run:
                    logger.info("[dry-run] would install %s (%s)", spec, spec.kind)
                    continue

                try:
                    used_cache = self._install_one(spec, result)
                except InstallError as e:
                    logger.error("Failed to install %s: %s", spec, e)
                    result.error = e
                    break

                result.installed.append(spec.cache_key)
                if used_cache:
                    result.from_cache.append(spec.cache_key)

        return result

    def _install_one(self, spec: PackageSpec, result: InstallResult) -> bool:
        """Install one package; returns True when served from the cache.

        A cache install and the network retries share one attempt budget.
        """
        budget = self._policy.max_attempts
        entry = self._cache.verified(spec) if self._cache is not None else None

        if entry is not None:
            logger.info("Installing from cache: %s", spec)
            result.attempts[spec.cache_key] = result.attempts.get(spec.cache_key, 0) + 1
            budget -= 1
            try:
                self._backend.add(
                    entry.local_archive_path,
                    spec.kind,
                    self._project_dir,
                    timeout=self._timeout,
                    cancel_event=self._cancel,
                )
            except InstallCancelled:
                raise
            except InstallError as e:
                if budget < 1:
                    raise self._exhausted(spec, e) from e
                logger.warning("Cache install failed for %s (%s), using network", spec, e)
            else:
                self._verify_installed(spec)
                return True

        self._add_with_retry(spec, spec.install_target, result, budget)
        self._verify_installed(spec)
        return False

    def _verify_installed(self, spec: PackageSpec) -> None:
        if not self._satisfied(spec):
            raise FatalInstallError(
                f"{spec}: installed but verification failed", package=spec.name
            )
        logger.info("Installed: %s", spec)

    def _exhausted(self, spec: PackageSpec, error: InstallError) -> FatalInstallError:
        return FatalInstallError(
            f"{spec}: giving up after {self._policy.max_attempts} attempts: {error}",
            package=spec.name,
            stderr=error.stderr,
        )

    def _add_with_retry(
        self, spec: PackageSpec, target: str, result: InstallResult, budget: int
    ) -> None:
        def attempt(n: int) -> None:
            if self._cancel.is_set():
                raise InstallCancelled(f"{spec}: cancelled", package=spec.name)
            result.attempts[spec.cache_key] = result.attempts.get(spec.cache_key, 0) + 1
            logger.debug("Installing %s (attempt %d)", target, n)
            self._backend.add(
                target,
                spec.kind,
                self._project_dir,
                timeout=self._timeout,
                cancel_event=self._cancel,
            )

        try:
            self._policy.run(
                attempt,
                retry_on=(TransientInstallError,),
                cancel_event=self._cancel,
                label=f"install {spec}",
                max_attempts=budget,
            )
        except RetryCancelled as e:
            raise InstallCancelled(f"{spec}: cancelled", package=spec.name) from e
        except TransientInstallError as e:
            # Retries exhausted: escalate to fatal for this step
            raise self._exhausted(spec, e) from e

    # ── Cache warming ───────────────────────────────────────────

    def warm_cache(self, specs: Iterable[PackageSpec]) -> dict[str, Any]:
        """Fetch archives for specs not yet cached (same retry policy)."""
        if self._cache is None:
            return {"ok": False, "error": "No cache configured", "cached": [], "failed": {}}

        cached: list[str] = []
        skipped: list[str] = []
        failed: dict[str, str] = {}

        with self._lock:
            for spec in specs:
                if self._cache.verified(spec) is not None:
                    skipped.append(spec.cache_key)
                    continue
                if self._dry_run:
                    logger.info("[dry-run] would cache %s", spec)
                    continue
                staging = Path(tempfile.mkdtemp(prefix="stackforge-pack-"))
                try:
                    archive = self._pack_with_retry(spec, staging)
                    self._cache.store(spec, archive)
                except InstallError as e:
                    failed[spec.cache_key] = str(e)
                    continue
                finally:
                    shutil.rmtree(staging, ignore_errors=True)
                cached.append(spec.cache_key)

        return {"ok": not failed, "cached": cached, "skipped": skipped, "failed": failed}

    def _pack_with_retry(self, spec: PackageSpec, staging: Path) -> Path:
        def attempt(_n: int) -> Path:
            return self._backend.pack(
                spec, staging, timeout=self._timeout, cancel_event=self._cancel
            )

        try:
            return self._policy.run(
                attempt,
                retry_on=(TransientInstallError,),
                cancel_event=self._cancel,
                label=f"fetch {spec}",
            )
        except RetryCancelled as e:
            raise InstallCancelled(f"{spec}: cancelled", package=spec.name) from e
