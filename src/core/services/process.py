"""
Process runner — the single place where child processes are started.

Used for package-manager calls and script step bodies. Every call has
a bounded timeout and can be cancelled through a shared event: the
child is terminated (then killed) as soon as the event fires.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# How often a running child is checked against the cancel event
_POLL_INTERVAL = 0.2
# Grace period between SIGTERM and SIGKILL
_KILL_GRACE = 5.0
# Output kept for error reporting
_TAIL = 2000


@dataclass
class CommandResult:
    """Outcome of one child process."""

    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled

    def describe(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.timed_out:
            return "timed out"
        return f"exit {self.returncode}"


def run_command(
    cmd: list[str],
    *,
    cwd: str | os.PathLike | None = None,
    env: dict[str, str] | None = None,
    timeout: float = 120,
    cancel_event: threading.Event | None = None,
) -> CommandResult:
    """Run ``cmd`` to completion, a timeout, or cancellation.

    Args:
        cmd: Command list (no shell).
        cwd: Working directory.
        env: Full environment for the child (default: inherit).
        timeout: Seconds before the child is terminated.
        cancel_event: When set, the child is terminated promptly.

    Returns:
        CommandResult; never raises for a non-zero exit.

    Raises:
        OSError: If the executable cannot be started.
    """
    logger.debug("Running: %s (cwd=%s, timeout=%ss)", " ".join(cmd), cwd, timeout)
    start = time.monotonic()

    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )

    timed_out = False
    cancelled = False
    deadline = start + timeout

    while True:
        try:
            stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
            elif time.monotonic() >= deadline:
                timed_out = True
            else:
                continue
            stdout, stderr = _terminate(proc)
            break

    elapsed_ms = int((time.monotonic() - start) * 1000)
    result = CommandResult(
        returncode=proc.returncode,
        stdout=(stdout or "")[-_TAIL:],
        stderr=(stderr or "")[-_TAIL:],
        elapsed_ms=elapsed_ms,
        timed_out=timed_out,
        cancelled=cancelled,
    )
    if not result.ok:
        logger.debug("Command %s: %s", cmd[0], result.describe())
    return result


def _terminate(proc: subprocess.Popen) -> tuple[str, str]:
    proc.terminate()
    try:
        return proc.communicate(timeout=_KILL_GRACE)
    except subprocess.TimeoutExpired:
        proc.kill()
        return proc.communicate()
