"""
Tests for package installation — verify, cache, bounded retry, serialization.

The backend is a fake that edits package.json and node_modules on disk;
nothing here touches the network or a real package manager.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from src.core.errors import FatalInstallError, InstallCancelled, TransientInstallError
from src.core.models.step import PackageSpec
from src.core.services.packages import (
    PackageCache,
    PackageInstallManager,
    classify_failure,
    satisfies,
)
from src.core.services.process import CommandResult
from tests.helpers import FakeBackend, fast_policy

LEFT_PAD = PackageSpec(name="left-pad", version_constraint="^1.0.0")
TYPES_NODE = PackageSpec(name="@types/node", kind="dev")


class TestVersionConstraints:
    @pytest.mark.parametrize(
        ("version", "constraint", "expected"),
        [
            ("1.4.2", "", True),
            ("1.4.2", "*", True),
            ("1.4.2", "latest", True),
            ("1.4.2", "1.4.2", True),
            ("1.4.3", "1.4.2", False),
            ("1.9.0", "^1.4.0", True),
            ("2.0.0", "^1.4.0", False),
            ("0.3.9", "^0.3.1", True),
            ("0.4.0", "^0.3.1", False),
            ("1.4.9", "~1.4.0", True),
            ("1.5.0", "~1.4.0", False),
            ("3.0.0", ">=2", True),
            ("1.9.9", ">=2", False),
            ("1.2.7", "1.2.x", True),
            ("1.3.0", "1.x", True),
            ("2.1.0", ">=1.0.0 <2.0.0", False),
            ("2.1.0", "^1.0.0 || ^2.0.0", True),
        ],
    )
    def test_satisfies(self, version, constraint, expected):
        assert satisfies(version, constraint) is expected


class TestClassifyFailure:
    def test_timeout_is_transient(self):
        err = classify_failure(CommandResult(returncode=None, timed_out=True), "x")
        assert isinstance(err, TransientInstallError)

    def test_network_reset_is_transient(self):
        result = CommandResult(returncode=1, stderr="npm ERR! code ECONNRESET\nnetwork error")
        assert isinstance(classify_failure(result, "x"), TransientInstallError)

    def test_not_found_is_fatal(self):
        result = CommandResult(returncode=1, stderr="ERR_PNPM_FETCH_404  GET https://registry/x: Not Found - 404")
        assert isinstance(classify_failure(result, "x"), FatalInstallError)

    def test_version_conflict_is_fatal(self):
        result = CommandResult(returncode=1, stderr="npm ERR! code ERESOLVE\nunable to resolve dependency tree")
        assert isinstance(classify_failure(result, "x"), FatalInstallError)

    def test_unknown_failure_is_fatal(self):
        assert isinstance(classify_failure(CommandResult(returncode=2, stderr="???"), "x"), FatalInstallError)


class TestVerify:
    def test_not_declared(self, manager: PackageInstallManager):
        assert manager.verify([LEFT_PAD]) is False

    def test_declared_and_installed(self, manager: PackageInstallManager):
        manager.install([LEFT_PAD])
        assert manager.verify([LEFT_PAD]) is True

    def test_installed_version_outside_constraint(self, manager: PackageInstallManager, target: Path):
        manager.install([LEFT_PAD])
        assert manager.verify([PackageSpec(name="left-pad", version_constraint="^2.0.0")]) is False


class TestInstall:
    def test_installs_by_kind(self, manager: PackageInstallManager, target: Path):
        result = manager.install([LEFT_PAD, TYPES_NODE], "dev")
        assert result.ok
        assert result.installed == ["@types/node"]

        manifest = json.loads((target / "package.json").read_text())
        assert "@types/node" in manifest["devDependencies"]
        assert "dependencies" not in manifest

    def test_already_satisfied_is_noop(self, manager: PackageInstallManager, backend: FakeBackend):
        manager.install([LEFT_PAD])
        backend.calls.clear()

        result = manager.install([LEFT_PAD])
        assert result.ok
        assert result.already_satisfied == ["left-pad@^1.0.0"]
        assert backend.calls == []

    def test_fails_twice_then_succeeds_with_three_attempts(self, target: Path, cache: PackageCache):
        backend = FakeBackend(failures={
            "left-pad": [TransientInstallError("ETIMEDOUT"), TransientInstallError("ECONNRESET")],
        })
        manager = PackageInstallManager(target, backend, cache, fast_policy())

        result = manager.install([LEFT_PAD])
        assert result.ok
        assert result.attempts == {"left-pad@^1.0.0": 3}
        assert len(backend.calls) == 3

    def test_transient_failures_exhaust_after_three(self, target: Path, cache: PackageCache):
        backend = FakeBackend(failures={"left-pad": [TransientInstallError("ETIMEDOUT")] * 4})
        manager = PackageInstallManager(target, backend, cache, fast_policy())

        result = manager.install([LEFT_PAD])
        assert isinstance(result.error, FatalInstallError)
        assert "giving up after 3 attempts" in str(result.error)
        assert result.attempts == {"left-pad@^1.0.0": 3}
        assert len(backend.calls) == 3

    def test_fatal_error_not_retried(self, target: Path, cache: PackageCache):
        backend = FakeBackend(failures={"left-pad": [FatalInstallError("E404")]})
        manager = PackageInstallManager(target, backend, cache, fast_policy())

        result = manager.install([LEFT_PAD])
        assert isinstance(result.error, FatalInstallError)
        assert result.attempts == {"left-pad@^1.0.0": 1}
        with pytest.raises(FatalInstallError):
            result.raise_for_error()

    def test_stops_at_first_failure(self, target: Path, cache: PackageCache):
        backend = FakeBackend(failures={"left-pad": [FatalInstallError("E404")]})
        manager = PackageInstallManager(target, backend, cache, fast_policy())

        result = manager.install([LEFT_PAD, PackageSpec(name="zod")])
        assert not result.ok
        assert result.installed == []
        assert backend.calls == ["left-pad@^1.0.0"]

    def test_post_install_verification(self, target: Path, cache: PackageCache):
        backend = FakeBackend(versions={"left-pad": "0.9.0"})
        manager = PackageInstallManager(target, backend, cache, fast_policy())

        result = manager.install([LEFT_PAD])
        assert isinstance(result.error, FatalInstallError)
        assert "verification failed" in str(result.error)

    def test_cancelled_before_start(self, target: Path, backend: FakeBackend, cache: PackageCache):
        cancel = threading.Event()
        cancel.set()
        manager = PackageInstallManager(target, backend, cache, fast_policy(), cancel_event=cancel)

        result = manager.install([LEFT_PAD])
        assert isinstance(result.error, InstallCancelled)
        assert backend.calls == []

    def test_dry_run_changes_nothing(self, target: Path, backend: FakeBackend, cache: PackageCache):
        manager = PackageInstallManager(target, backend, cache, fast_policy(), dry_run=True)
        before = (target / "package.json").read_text()

        result = manager.install([LEFT_PAD])
        assert result.ok
        assert backend.calls == []
        assert (target / "package.json").read_text() == before


class TestCache:
    def test_preflight_is_read_only(self, manager: PackageInstallManager, cache: PackageCache):
        result = manager.preflight_check([LEFT_PAD])
        assert result.missing == {"left-pad@^1.0.0"}
        assert result.cached == set()
        assert not cache.path.exists()

    def test_warm_then_install_from_cache(self, manager: PackageInstallManager, backend: FakeBackend):
        warmed = manager.warm_cache([LEFT_PAD])
        assert warmed["cached"] == ["left-pad@^1.0.0"]
        assert manager.preflight_check([LEFT_PAD]).cached == {"left-pad@^1.0.0"}

        result = manager.install([LEFT_PAD])
        assert result.ok
        assert result.from_cache == ["left-pad@^1.0.0"]
        assert backend.calls[0].endswith(".tgz")

    def test_warm_skips_cached(self, manager: PackageInstallManager, backend: FakeBackend):
        manager.warm_cache([LEFT_PAD])
        again = manager.warm_cache([LEFT_PAD])
        assert again["skipped"] == ["left-pad@^1.0.0"]
        assert backend.packed == ["left-pad@^1.0.0"]

    def test_hash_mismatch_falls_back_to_network(
        self, manager: PackageInstallManager, backend: FakeBackend, cache: PackageCache
    ):
        manager.warm_cache([LEFT_PAD])
        entry = cache.lookup(LEFT_PAD)
        assert entry is not None
        Path(entry.local_archive_path).write_bytes(b"tampered")

        assert cache.verified(LEFT_PAD) is None
        result = manager.install([LEFT_PAD])
        assert result.ok
        assert result.from_cache == []
        assert backend.calls == ["left-pad@^1.0.0"]
        # Never invalidated implicitly
        assert cache.lookup(LEFT_PAD) is not None

    def test_failed_cache_install_shares_attempt_budget(
        self, manager: PackageInstallManager, backend: FakeBackend
    ):
        manager.warm_cache([LEFT_PAD])
        backend.failures["left-pad"] = [TransientInstallError("ECONNRESET")] * 3

        result = manager.install([LEFT_PAD])
        assert isinstance(result.error, FatalInstallError)
        assert "giving up after 3 attempts" in str(result.error)
        assert result.attempts == {"left-pad@^1.0.0": 3}
        assert len(backend.calls) == 3
        assert backend.calls[0].endswith(".tgz")

    def test_failed_cache_install_then_network_succeeds(
        self, manager: PackageInstallManager, backend: FakeBackend
    ):
        manager.warm_cache([LEFT_PAD])
        backend.failures["left-pad"] = [TransientInstallError("ECONNRESET")] * 2

        result = manager.install([LEFT_PAD])
        assert result.ok
        assert result.from_cache == []
        assert result.attempts == {"left-pad@^1.0.0": 3}

    def test_clear(self, manager: PackageInstallManager, cache: PackageCache):
        manager.warm_cache([LEFT_PAD, PackageSpec(name="zod")])
        assert cache.clear("zod") == 1
        assert cache.status()["packages"] == ["left-pad@^1.0.0"]
        assert cache.clear() == 1
        assert cache.entries() == []


class TestSerialization:
    def test_concurrent_installs_do_not_corrupt_manifest(self, target: Path, cache: PackageCache):
        backend = FakeBackend(delay=0.02)
        manager = PackageInstallManager(target, backend, cache, fast_policy())
        names = [f"pkg-{i}" for i in range(6)]
        results = {}

        def install(name: str) -> None:
            results[name] = manager.install([PackageSpec(name=name)])

        threads = [threading.Thread(target=install, args=(n,)) for n in names]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.ok for r in results.values())
        assert backend.max_active == 1
        manifest = json.loads((target / "package.json").read_text())
        assert sorted(manifest["dependencies"]) == names
