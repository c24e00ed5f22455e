"""Timeouts, retries and cycle deadlines for collaborator calls.

Every network call the engine makes goes through call_with_retry():
- A per-call timeout turns a hung call into a TransientIOError
- TransientIOError is retried with exponential backoff and +/-20% jitter
- Anything else propagates on the first failure

Usage:
    from mailbrief.core.retry import RetryPolicy, call_with_retry

    policy = RetryPolicy(max_retries=3, delays=(1.0, 2.0, 4.0), timeout=30.0)
    envelopes = await call_with_retry(
        lambda: store.list_envelopes(flt),
        policy=policy,
        operation="list_envelopes",
    )
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from mailbrief.core.errors import TransientIOError
from mailbrief.core.logging import get_logger
from mailbrief.core.rate_limiter import TokenBucket

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)

# Share of the per-call timeout a collaborator may spend on its own I/O
INNER_TIMEOUT_FACTOR = 0.9


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How often and how long to retry one kind of call.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retrying)
        delays: Backoff delays in seconds, the last one repeats
        timeout: Per-attempt timeout in seconds (None for no timeout)
        jitter: Fractional jitter applied to each delay
    """

    max_retries: int = 3
    delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS
    timeout: float | None = 30.0
    jitter: float = 0.2

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number `attempt` (0-based)."""
        if not self.delays:
            return 0.0
        base = self.delays[min(attempt, len(self.delays) - 1)]
        return max(0.0, base + base * self.jitter * (2 * random.random() - 1))


def inner_timeout(timeout: float) -> float:
    """I/O timeout for a collaborator, so it gives up before call_with_retry does."""
    return timeout * INNER_TIMEOUT_FACTOR


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation: str,
    bucket: TokenBucket | None = None,
    **log_context: object,
) -> T:
    """Run an async collaborator call with timeout, pacing and retries.

    Args:
        func: Zero-argument callable returning a fresh awaitable per attempt
        policy: Retry policy to apply
        operation: Operation name for logs (e.g., 'apply_label')
        bucket: Optional token bucket consumed before each attempt
        **log_context: Extra fields added to retry log entries

    Returns:
        The call's result

    Raises:
        TransientIOError: When every attempt failed transiently
        Exception: Any non-transient error from func, unchanged
    """
    last_error: TransientIOError | None = None

    for attempt in range(policy.max_retries + 1):
        if bucket is not None:
            await bucket.consume()
        try:
            if policy.timeout is None:
                return await func()
            return await asyncio.wait_for(func(), timeout=policy.timeout)
        except TimeoutError as e:
            last_error = TransientIOError(
                f"{operation} timed out after {policy.timeout}s"
            )
            last_error.__cause__ = e
        except TransientIOError as e:
            last_error = e

        if attempt >= policy.max_retries:
            break

        delay = policy.delay_for(attempt)
        logger.warning(
            "transient_failure_retrying",
            operation=operation,
            attempt=attempt + 1,
            max_retries=policy.max_retries,
            delay_s=round(delay, 2),
            error=str(last_error),
            **log_context,
        )
        await asyncio.sleep(delay)

    logger.error(
        "transient_failure_exhausted",
        operation=operation,
        attempts=policy.max_retries + 1,
        error=str(last_error),
        **log_context,
    )
    assert last_error is not None
    raise last_error


class Deadline:
    """Overall time budget for one cycle.

    Checked between units of work; never used to interrupt a label
    transition that has already started.
    """

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def remaining(self) -> float | None:
        """Seconds left, or None for an unbounded deadline."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def clamp(self, timeout: float | None) -> float | None:
        """Shorten a per-call timeout so it never outlives the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)
