"""Tests for the bounded retry policy."""

from __future__ import annotations

import pytest

from vdctl.infrastructure.retry import RetryPolicy


class _Flaky:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise OSError(f"attempt {self.calls}")
        return "done"


class TestRetryPolicy:
    def test_validation(self) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(delay=-1)

    def test_call_succeeds_after_failures(self) -> None:
        sleeps: list[float] = []
        policy = RetryPolicy(max_attempts=3, delay=2.0, sleep=sleeps.append)
        fn = _Flaky(failures=2)
        assert policy.call(fn, retry_on=(OSError,)) == "done"
        assert fn.calls == 3
        assert sleeps == [2.0, 2.0]

    def test_call_reraises_last_error(self) -> None:
        sleeps: list[float] = []
        policy = RetryPolicy(max_attempts=3, delay=1.0, sleep=sleeps.append)
        fn = _Flaky(failures=5)
        with pytest.raises(OSError, match="attempt 3"):
            policy.call(fn, retry_on=(OSError,))
        assert fn.calls == 3
        assert len(sleeps) == 2

    def test_unlisted_errors_are_not_retried(self) -> None:
        policy = RetryPolicy(max_attempts=3, delay=0, sleep=lambda _s: None)
        fn = _Flaky(failures=1)
        with pytest.raises(OSError):
            policy.call(fn, retry_on=(ValueError,))
        assert fn.calls == 1

    def test_backoff_is_capped(self) -> None:
        policy = RetryPolicy(delay=1.0, backoff=10.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 5.0, 5.0]

    def test_poll(self) -> None:
        states = iter([False, False, True])
        sleeps: list[float] = []
        policy = RetryPolicy.for_timeout(2.0, 0.5, sleep=sleeps.append)
        assert policy.poll(lambda: next(states)) is True
        assert sleeps == [0.5, 0.5]

    def test_poll_gives_up(self) -> None:
        sleeps: list[float] = []
        policy = RetryPolicy.for_timeout(1.0, 0.5, sleep=sleeps.append)
        assert policy.max_attempts == 3
        assert policy.poll(lambda: False) is False
        assert sum(sleeps) == pytest.approx(1.0)
