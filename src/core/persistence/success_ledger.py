"""
Success ledger — durable, crash-safe record of completed steps.

Two stores live under ``<state_dir>/ledger/``:

    succeeded/<quoted-step-id>.json   one marker per completed step
    events.ndjson                     append-only Succeeded/Failed history

A marker is written to a temp file, fsynced, then hard-linked into
place. ``os.link`` refuses to replace an existing name, which gives an
atomic "create if not exists": a crash at any point leaves either no
marker or a complete one, never a half-written Succeeded entry.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote, unquote

from pydantic import BaseModel, Field

from src.core.errors import LedgerError
from src.core.models.execution import StepStatus

logger = logging.getLogger(__name__)

LEDGER_DIR = "ledger"
MARKER_DIR = "succeeded"
EVENTS_FILE = "events.ndjson"

_RECORDABLE = (StepStatus.SUCCEEDED, StepStatus.FAILED)


class LedgerEntry(BaseModel):
    """A single ledger event (also the marker payload)."""

    step_id: str
    status: StepStatus
    recorded_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    error: str | None = None


class SuccessLedger:
    """Idempotence primitive: which step ids have completed.

    Safe for concurrent writers to distinct keys within one process;
    the event log is appended under a lock.
    """

    def __init__(self, state_dir: Path, dry_run: bool = False):
        self._root = state_dir / LEDGER_DIR
        self._markers = self._root / MARKER_DIR
        self._events = self._root / EVENTS_FILE
        self._dry_run = dry_run
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._root

    # ── Queries ─────────────────────────────────────────────────

    def has_succeeded(self, step_id: str) -> bool:
        """Whether a complete Succeeded marker exists for ``step_id``."""
        return self.marker(step_id) is not None

    def marker(self, step_id: str) -> LedgerEntry | None:
        """Load the Succeeded marker for ``step_id``, if any."""
        path = self._marker_path(step_id)
        if not path.is_file():
            return None
        try:
            entry = LedgerEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable marker %s: %s", path, e)
            return None
        if entry.step_id != step_id or entry.status != StepStatus.SUCCEEDED:
            logger.warning("Ignoring mismatched marker %s", path)
            return None
        return entry

    def succeeded_ids(self) -> set[str]:
        """All step ids with a Succeeded marker."""
        if not self._markers.is_dir():
            return set()
        ids: set[str] = set()
        for path in self._markers.glob("*.json"):
            step_id = unquote(path.stem)
            if self.has_succeeded(step_id):
                ids.add(step_id)
        return ids

    def history(self, step_id: str | None = None) -> list[LedgerEntry]:
        """Read the event log, oldest first; corrupt lines are skipped."""
        if not self._events.is_file():
            return []

        entries: list[LedgerEntry] = []
        try:
            with self._events.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = LedgerEntry.model_validate_json(line)
                    except ValueError as e:
                        logger.warning("Skipping corrupt ledger event at line %d: %s", line_num, e)
                        continue
                    if step_id is None or entry.step_id == step_id:
                        entries.append(entry)
        except OSError as e:
            raise LedgerError(f"Cannot read ledger events {self._events}: {e}") from e
        return entries

    def last_event(self, step_id: str) -> LedgerEntry | None:
        events = self.history(step_id)
        return events[-1] if events else None

    # ── Writes ──────────────────────────────────────────────────

    def record(self, step_id: str, status: StepStatus, error: str | None = None) -> None:
        """Durably record a terminal outcome.

        Succeeded appends an event, then creates the marker (kept as-is if
        one already exists). Failed removes any marker before appending its
        event, so a failed re-run never leaves an earlier success behind.
        A marker only exists once its event is in the history.
        """
        if status not in _RECORDABLE:
            raise LedgerError(f"Cannot record status '{status}' for {step_id}")

        entry = LedgerEntry(step_id=step_id, status=status, error=error)

        if self._dry_run:
            logger.info("[dry-run] would record %s=%s", step_id, status)
            return

        if status == StepStatus.SUCCEEDED:
            self._append_event(entry)
            self._create_marker(entry)
        else:
            if self._remove_marker(step_id):
                logger.info("Dropped earlier success marker for failed step: %s", step_id)
            self._append_event(entry)

    def clear(self, step_id: str) -> bool:
        """Forget a step's success so the next run executes it again."""
        if not self._marker_path(step_id).exists():
            return False
        if self._dry_run:
            logger.info("[dry-run] would clear %s", step_id)
            return True
        self._remove_marker(step_id)
        logger.info("Cleared state for: %s", step_id)
        return True

    def clear_all(self) -> int:
        """Forget every success marker. Event history is kept."""
        if not self._markers.is_dir():
            return 0
        count = 0
        for path in self._markers.glob("*.json"):
            if not self._dry_run:
                path.unlink(missing_ok=True)
            count += 1
        logger.info("Cleared %d success markers", count)
        return count

    # ── Internals ───────────────────────────────────────────────

    def _marker_path(self, step_id: str) -> Path:
        return self._markers / f"{quote(step_id, safe='')}.json"

    def _remove_marker(self, step_id: str) -> bool:
        path = self._marker_path(step_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise LedgerError(f"Cannot remove success marker for {step_id}: {e}") from e
        return True

    def _create_marker(self, entry: LedgerEntry) -> None:
        path = self._marker_path(entry.step_id)
        content = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"

        try:
            self._markers.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self._markers, prefix=".marker_", suffix=".tmp")
            tmp = Path(tmp_path)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                try:
                    os.link(tmp, path)
                    logger.debug("Marked success: %s", entry.step_id)
                except FileExistsError:
                    logger.debug("Already marked: %s", entry.step_id)
            finally:
                tmp.unlink(missing_ok=True)
            _fsync_dir(self._markers)
        except OSError as e:
            raise LedgerError(f"Cannot write success marker for {entry.step_id}: {e}") from e

    def _append_event(self, entry: LedgerEntry) -> None:
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        with self._lock:
            try:
                self._root.mkdir(parents=True, exist_ok=True)
                with self._events.open("a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise LedgerError(f"Cannot append ledger event: {e}") from e


def _fsync_dir(path: Path) -> None:
    """Persist a directory entry (no-op where unsupported)."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)
