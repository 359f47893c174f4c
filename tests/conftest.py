"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from src.core.services.packages import PackageCache, PackageInstallManager
from tests.helpers import FakeBackend, fast_policy


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def target(tmp_path: Path) -> Path:
    """An empty target project with a package.json."""
    root = tmp_path / "target"
    root.mkdir()
    (root / "package.json").write_text(json.dumps({"name": "target", "version": "0.0.0"}))
    return root


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def cache(tmp_path: Path) -> PackageCache:
    return PackageCache(tmp_path / "cache")


@pytest.fixture
def manager(target: Path, backend: FakeBackend, cache: PackageCache) -> PackageInstallManager:
    return PackageInstallManager(target, backend, cache, fast_policy())
