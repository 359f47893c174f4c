"""
File generation guard — idempotent writers for generated artifacts.

Three named modes replace "skip if file present" control flow:

    create_if_absent   never touches an existing file's bytes
    append_once        appends a block only if its marker is not there yet
    overwrite          replaces a file after backing up the previous one

An existing file in create_if_absent mode is not an error: the write is
skipped and logged at INFO.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import time
from pathlib import Path

from src.core.errors import FileGenerationError
from src.core.models.artifact import GeneratedArtifact, WriteMode, WriteOutcome, WriteResult

logger = logging.getLogger(__name__)

# ── Thread safety ───────────────────────────────────────────────
# Per-path lock: two steps appending to the same file (e.g. .env)
# must not interleave their read-check-append sequences.
_path_locks: dict[str, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _get_path_lock(path: Path) -> threading.Lock:
    """Get or create a lock for a specific target path."""
    key = str(path)
    with _path_locks_guard:
        if key not in _path_locks:
            _path_locks[key] = threading.Lock()
        return _path_locks[key]


def _to_bytes(content: str | bytes) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else content


class FileGenerationGuard:
    """Write-mode enforcement for everything a step generates.

    Args:
        root: Target project root; relative paths resolve against it.
        dry_run: Report what would happen without writing.
    """

    def __init__(self, root: Path, dry_run: bool = False):
        self._root = root
        self._dry_run = dry_run

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, path: str | os.PathLike) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self._root / p

    # ── Modes ───────────────────────────────────────────────────

    def write_if_absent(self, path: str | os.PathLike, content: str | bytes) -> WriteResult:
        """Create ``path`` with ``content`` unless it already exists.

        The file appears atomically (temp file + hard link), so a crash
        never leaves a partial file behind and an existing file is never
        modified, whatever its content.
        """
        target = self.resolve(path)

        if target.exists():
            logger.info("File exists, skipping: %s", target)
            return WriteResult(path=str(target), outcome=WriteOutcome.SKIPPED_EXISTING)

        if self._dry_run:
            logger.info("[dry-run] would create %s", target)
            return WriteResult(path=str(target), outcome=WriteOutcome.DRY_RUN)

        tmp = self._write_temp(target, _to_bytes(content))
        try:
            os.link(tmp, target)
        except FileExistsError:
            logger.info("File exists, skipping: %s", target)
            return WriteResult(path=str(target), outcome=WriteOutcome.SKIPPED_EXISTING)
        finally:
            tmp.unlink(missing_ok=True)

        logger.info("Created file: %s", target)
        return WriteResult(path=str(target), outcome=WriteOutcome.CREATED)

    def append_once(
        self,
        path: str | os.PathLike,
        marker_token: str,
        content: str,
    ) -> WriteResult:
        """Append ``content`` unless ``marker_token`` is already in the file.

        ``content`` must itself contain the marker, otherwise a second call
        could not detect the first one. A missing file is created.
        """
        if not marker_token:
            raise FileGenerationError("append_once requires a non-empty marker token")
        if marker_token not in content:
            raise FileGenerationError(
                f"append_once content for {path} does not contain its marker {marker_token!r}"
            )

        target = self.resolve(path)

        with _get_path_lock(target):
            existing = ""
            if target.exists():
                try:
                    existing = target.read_text(encoding="utf-8")
                except OSError as e:
                    raise FileGenerationError(f"Cannot read {target}: {e}") from e

            if marker_token in existing:
                logger.info("Marker %r already present in %s, skipping", marker_token, target)
                return WriteResult(path=str(target), outcome=WriteOutcome.SKIPPED_MARKER_PRESENT)

            if self._dry_run:
                logger.info("[dry-run] would append to %s", target)
                return WriteResult(path=str(target), outcome=WriteOutcome.DRY_RUN)

            block = content
            if existing and not existing.endswith("\n"):
                block = "\n" + block
            if not block.endswith("\n"):
                block += "\n"

            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("a", encoding="utf-8") as f:
                f.write(block)
                f.flush()
                os.fsync(f.fileno())

        logger.info("Appended to: %s", target)
        return WriteResult(path=str(target), outcome=WriteOutcome.APPENDED)

    def overwrite(self, path: str | os.PathLike, content: str | bytes) -> WriteResult:
        """Replace ``path``, keeping the previous version as a backup.

        The backup is ``PATH.bak.YYYYMMDD_HHMMSS`` (with a numeric suffix
        if that name is taken). Identical content is left untouched.
        """
        target = self.resolve(path)
        data = _to_bytes(content)

        with _get_path_lock(target):
            if not target.exists():
                if self._dry_run:
                    logger.info("[dry-run] would create %s", target)
                    return WriteResult(path=str(target), outcome=WriteOutcome.DRY_RUN)
                self._replace(target, data)
                logger.info("Created file: %s", target)
                return WriteResult(path=str(target), outcome=WriteOutcome.CREATED)

            if target.read_bytes() == data:
                logger.debug("Unchanged, not overwriting: %s", target)
                return WriteResult(path=str(target), outcome=WriteOutcome.UNCHANGED)

            if self._dry_run:
                logger.info("[dry-run] would overwrite %s", target)
                return WriteResult(path=str(target), outcome=WriteOutcome.DRY_RUN)

            backup = self._backup(target)
            self._replace(target, data)

        logger.info("Overwrote %s (backup: %s)", target, backup)
        return WriteResult(
            path=str(target), outcome=WriteOutcome.OVERWRITTEN, backup_path=str(backup)
        )

    def apply(self, artifact: GeneratedArtifact, content: str) -> WriteResult:
        """Write ``content`` according to ``artifact.mode``."""
        if artifact.mode == WriteMode.CREATE_IF_ABSENT:
            return self.write_if_absent(artifact.path, content)
        if artifact.mode == WriteMode.APPEND_ONCE:
            if not artifact.marker_token:
                raise FileGenerationError(f"{artifact.path}: append_once needs a marker_token")
            return self.append_once(artifact.path, artifact.marker_token, content)
        return self.overwrite(artifact.path, content)

    # ── Internals ───────────────────────────────────────────────

    def _write_temp(self, target: Path, data: bytes) -> Path:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
        return tmp

    def _replace(self, target: Path, data: bytes) -> None:
        tmp = self._write_temp(target, data)
        try:
            os.replace(tmp, target)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise

    def _backup(self, target: Path) -> Path:
        ts = time.strftime("%Y%m%d_%H%M%S")
        backup = target.with_name(f"{target.name}.bak.{ts}")
        n = 1
        while backup.exists():
            backup = target.with_name(f"{target.name}.bak.{ts}.{n}")
            n += 1
        shutil.copy2(target, backup)
        logger.info("Backed up %s → %s", target, backup)
        return backup
