"""
Package installation — cache, backend, verification and retry.

    from src.core.services.packages import PackageInstallManager, NodePackageBackend
"""

from src.core.services.packages.backend import (
    NodePackageBackend,
    PackageBackend,
    classify_failure,
)
from src.core.services.packages.cache import PackageCache, sha256_file
from src.core.services.packages.manager import (
    InstallResult,
    PackageInstallManager,
    PreflightResult,
)
from src.core.services.packages.version import satisfies

__all__ = [
    "InstallResult",
    "NodePackageBackend",
    "PackageBackend",
    "PackageCache",
    "PackageInstallManager",
    "PreflightResult",
    "classify_failure",
    "satisfies",
    "sha256_file",
]
