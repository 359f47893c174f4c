"""
Package cache — local archive store consulted before any network fetch.

Archives are addressed by ``name@constraint`` and indexed in
``<cache_dir>/index.json``. An entry is only reused after its sha256 is
recomputed and matches. This module never invalidates entries on its
own; ``clear()`` exists for explicit, user-driven invalidation.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any

from src.core.models.artifact import CacheEntry
from src.core.models.step import PackageSpec

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
ARCHIVE_DIR = "archives"


def sha256_file(path: Path) -> str:
    """Stream a file through sha256."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class PackageCache:
    """Name+version addressable archive cache."""

    def __init__(self, cache_dir: Path):
        self._dir = cache_dir
        self._index_path = cache_dir / INDEX_FILE
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._dir

    @property
    def archive_dir(self) -> Path:
        return self._dir / ARCHIVE_DIR

    # ── Reads ───────────────────────────────────────────────────

    def lookup(self, spec: PackageSpec) -> CacheEntry | None:
        """Index lookup only: no hashing, no network, no writes."""
        entry = self._load_index().get(spec.cache_key)
        if entry is None or not Path(entry.local_archive_path).is_file():
            return None
        return entry

    def verified(self, spec: PackageSpec) -> CacheEntry | None:
        """Return the entry only if its archive still hashes to content_hash."""
        entry = self.lookup(spec)
        if entry is None:
            return None
        if entry.package_spec.name != spec.name:
            logger.warning("Cache entry for %s names %s, ignoring", spec, entry.package_spec.name)
            return None
        try:
            actual = sha256_file(Path(entry.local_archive_path))
        except OSError as e:
            logger.warning("Cannot hash cached archive for %s: %s", spec, e)
            return None
        if actual != entry.content_hash:
            logger.warning(
                "Cache hash mismatch for %s: expected %s, got %s — using network",
                spec, entry.content_hash[:12], actual[:12],
            )
            return None
        return entry

    def entries(self) -> list[CacheEntry]:
        return list(self._load_index().values())

    def status(self) -> dict[str, Any]:
        """Summary of cached archives and their total size."""
        entries = self.entries()
        total = 0
        for entry in entries:
            path = Path(entry.local_archive_path)
            if path.is_file():
                total += path.stat().st_size
        return {
            "cache_dir": str(self._dir),
            "entries": len(entries),
            "packages": sorted(e.package_spec.cache_key for e in entries),
            "total_size_mb": round(total / (1024 * 1024), 1),
        }

    # ── Writes ──────────────────────────────────────────────────

    def store(self, spec: PackageSpec, archive: Path) -> CacheEntry:
        """Move ``archive`` into the cache and index it under ``spec``."""
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        dest = self.archive_dir / archive.name
        if archive.resolve() != dest.resolve():
            shutil.move(str(archive), str(dest))

        entry = CacheEntry(
            package_spec=spec,
            local_archive_path=str(dest),
            content_hash=sha256_file(dest),
        )
        with self._lock:
            index = self._load_index()
            index[spec.cache_key] = entry
            self._save_index(index)
        logger.info("Cached %s → %s", spec, dest.name)
        return entry

    def clear(self, name: str | None = None) -> int:
        """Remove entries for one package name, or everything."""
        with self._lock:
            index = self._load_index()
            doomed = [
                key for key, e in index.items()
                if name is None or e.package_spec.name == name
            ]
            for key in doomed:
                Path(index[key].local_archive_path).unlink(missing_ok=True)
                del index[key]
            self._save_index(index)
        logger.info("Cleared %d cache entries%s", len(doomed), f" for {name}" if name else "")
        return len(doomed)

    # ── Index persistence ───────────────────────────────────────

    def _load_index(self) -> dict[str, CacheEntry]:
        if not self._index_path.is_file():
            return {}
        try:
            raw = json.loads(self._index_path.read_text(encoding="utf-8"))
            return {k: CacheEntry.model_validate(v) for k, v in raw.items()}
        except (json.JSONDecodeError, OSError, ValueError, AttributeError) as e:
            logger.warning("Corrupt cache index %s: %s — treating as empty", self._index_path, e)
            return {}

    def _save_index(self, index: dict[str, CacheEntry]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        data = {k: v.model_dump(mode="json") for k, v in index.items()}
        content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

        _fd, tmp_path = tempfile.mkstemp(dir=self._dir, prefix=".index_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with open(_fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(self._index_path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
