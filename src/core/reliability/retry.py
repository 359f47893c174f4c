"""
Retry policy — bounded attempts with exponential backoff and jitter.

Used by the package installation manager for transient failures.
Waits go through a cancel event so a cancelled run never sleeps out
its backoff.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryCancelled(Exception):
    """The cancel event fired while waiting between attempts."""


@dataclass
class RetryPolicy:
    """How many times to try, and how long to wait in between.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the second attempt (seconds).
        max_delay: Upper bound on the backoff before jitter.
        jitter: Fraction of the delay added as uniform random jitter.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.3
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Backoff after the ``attempt``-th failure (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + self.rng.uniform(0, delay * self.jitter)

    def run(
        self,
        fn: Callable[[int], T],
        *,
        retry_on: tuple[type[BaseException], ...],
        cancel_event: threading.Event | None = None,
        label: str = "",
        max_attempts: int | None = None,
    ) -> T:
        """Call ``fn(attempt)`` until it returns, retrying ``retry_on`` errors.

        ``max_attempts`` narrows the policy limit for callers that already
        spent part of the budget elsewhere.

        The last error is re-raised once attempts are exhausted. Errors not
        listed in ``retry_on`` propagate immediately.

        Raises:
            RetryCancelled: If ``cancel_event`` is set during a backoff wait.
        """
        limit = self.max_attempts if max_attempts is None else min(max_attempts, self.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(attempt)
            except retry_on as e:
                if attempt >= limit:
                    logger.warning(
                        "%s failed after %d attempts: %s", label or "operation", attempt, e
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    label or "operation", attempt, limit, e, delay,
                )
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise RetryCancelled(label) from e
                else:
                    time.sleep(delay)
