"""
Tests for the retry policy — bounded attempts, backoff, cancellation.
"""

from __future__ import annotations

import random
import threading

import pytest

from src.core.reliability.retry import RetryCancelled, RetryPolicy


class Flaky(Exception):
    pass


class Broken(Exception):
    pass


def _failing(times: int, exc: type[Exception] = Flaky):
    calls: list[int] = []

    def fn(attempt: int) -> str:
        calls.append(attempt)
        if len(calls) <= times:
            raise exc(f"attempt {attempt}")
        return "ok"

    return fn, calls


class TestBackoff:
    def test_exponential_and_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_bounded(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=30.0, jitter=0.3, rng=random.Random(7))
        for _ in range(50):
            delay = policy.delay_for(2)
            assert 4.0 <= delay <= 4.0 * 1.3


class TestRun:
    def test_success_first_try(self):
        fn, calls = _failing(0)
        assert RetryPolicy(base_delay=0).run(fn, retry_on=(Flaky,)) == "ok"
        assert calls == [1]

    def test_fails_twice_then_succeeds(self):
        fn, calls = _failing(2)
        policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)
        assert policy.run(fn, retry_on=(Flaky,)) == "ok"
        assert calls == [1, 2, 3]

    def test_never_exceeds_max_attempts(self):
        fn, calls = _failing(10)
        policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)
        with pytest.raises(Flaky, match="attempt 3"):
            policy.run(fn, retry_on=(Flaky,))
        assert calls == [1, 2, 3]

    def test_narrowed_limit(self):
        fn, calls = _failing(10)
        policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)
        with pytest.raises(Flaky):
            policy.run(fn, retry_on=(Flaky,), max_attempts=2)
        assert calls == [1, 2]

    def test_narrowed_limit_never_widens(self):
        fn, calls = _failing(10)
        policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)
        with pytest.raises(Flaky):
            policy.run(fn, retry_on=(Flaky,), max_attempts=9)
        assert calls == [1, 2, 3]

    def test_other_errors_not_retried(self):
        fn, calls = _failing(5, exc=Broken)
        with pytest.raises(Broken):
            RetryPolicy(base_delay=0).run(fn, retry_on=(Flaky,))
        assert calls == [1]

    def test_cancel_during_backoff(self):
        fn, calls = _failing(5)
        cancel = threading.Event()
        cancel.set()
        policy = RetryPolicy(max_attempts=3, base_delay=60, max_delay=60)
        with pytest.raises(RetryCancelled):
            policy.run(fn, retry_on=(Flaky,), cancel_event=cancel)
        assert calls == [1]
