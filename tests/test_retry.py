"""Tests for call_with_retry() and Deadline."""

import asyncio

import pytest

from mailbrief.core.errors import ClassificationError, RateLimitExceeded, TransientIOError
from mailbrief.core.retry import Deadline, RetryPolicy, call_with_retry, inner_timeout

FAST = RetryPolicy(max_retries=3, delays=(0.0,), timeout=1.0)


class Recorder:
    """Async callable that fails with the queued errors, then returns 'ok'."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestCallWithRetry:
    """Tests for call_with_retry()."""

    async def test_success_first_try(self):
        func = Recorder()

        assert await call_with_retry(func, FAST, "op") == "ok"
        assert func.calls == 1

    async def test_transient_errors_retried(self):
        func = Recorder(TransientIOError("reset"), RateLimitExceeded("429"))

        assert await call_with_retry(func, FAST, "op") == "ok"
        assert func.calls == 3

    async def test_exhausted_raises_last_transient(self):
        func = Recorder(*(TransientIOError(f"fail {i}") for i in range(4)))

        with pytest.raises(TransientIOError, match="fail 3"):
            await call_with_retry(func, FAST, "op")
        assert func.calls == 4

    async def test_non_transient_not_retried(self):
        func = Recorder(ClassificationError("bad output"))

        with pytest.raises(ClassificationError):
            await call_with_retry(func, FAST, "op")
        assert func.calls == 1

    async def test_zero_retries(self):
        func = Recorder(TransientIOError("reset"))

        with pytest.raises(TransientIOError):
            await call_with_retry(func, RetryPolicy(max_retries=0, timeout=None), "op")
        assert func.calls == 1

    async def test_timeout_becomes_transient(self):
        calls = {"n": 0}

        async def hang() -> str:
            calls["n"] += 1
            await asyncio.sleep(10)
            return "late"

        policy = RetryPolicy(max_retries=1, delays=(0.0,), timeout=0.01)

        with pytest.raises(TransientIOError, match="timed out"):
            await call_with_retry(hang, policy, "slow_op")
        assert calls["n"] == 2


class TestRetryPolicy:
    """Tests for RetryPolicy.delay_for()."""

    def test_last_delay_repeats(self):
        policy = RetryPolicy(delays=(1.0, 2.0), jitter=0.0)

        assert [policy.delay_for(i) for i in range(4)] == [1.0, 2.0, 2.0, 2.0]

    def test_jitter_bounds(self):
        policy = RetryPolicy(delays=(10.0,), jitter=0.2)

        for _ in range(50):
            assert 8.0 <= policy.delay_for(0) <= 12.0

    def test_no_delays(self):
        assert RetryPolicy(delays=()).delay_for(0) == 0.0


def test_inner_timeout_leaves_headroom():
    assert inner_timeout(30.0) == pytest.approx(27.0)
    assert inner_timeout(0.5) < 0.5


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestDeadline:
    """Tests for Deadline."""

    def test_unbounded(self):
        deadline = Deadline(None)

        assert not deadline.expired
        assert deadline.remaining() is None
        assert deadline.clamp(30.0) == 30.0
        assert deadline.clamp(None) is None

    def test_expires(self):
        clock = FakeClock()
        deadline = Deadline(60, clock=clock)

        assert not deadline.expired
        clock.now += 59
        assert deadline.remaining() == pytest.approx(1.0)
        clock.now += 1
        assert deadline.expired
        assert deadline.remaining() == 0.0

    def test_clamp_shortens_timeout(self):
        clock = FakeClock()
        deadline = Deadline(10, clock=clock)

        assert deadline.clamp(30.0) == 10.0
        assert deadline.clamp(5.0) == 5.0
        assert deadline.clamp(None) == 10.0
