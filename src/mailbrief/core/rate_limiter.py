"""Token bucket pacing for outbound collaborator calls.

Each collaborator (mail store, classifier, issue sink) gets its own named
bucket so a burst of classification calls cannot starve label mutations of
their share of the mail transport's rate limit.

Standard buckets:
- mail_store: 5 calls per second (IMAP servers throttle bursts)
- classifier: 2 calls per second (Claude API, adjust based on tier)
- issue_sink: 1 call per second (GitHub secondary rate limits)
"""

import asyncio
import time

from mailbrief.core.errors import RateLimitExceeded
from mailbrief.core.logging import get_logger

logger = get_logger(__name__)

# Longest wait we accept before giving up and surfacing a transient error
MAX_WAIT_SECONDS = 20.0

DEFAULT_RATES: dict[str, tuple[float, int]] = {
    "mail_store": (5.0, 5),
    "classifier": (2.0, 2),
    "issue_sink": (1.0, 1),
}


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each call consumes one. When the
    bucket is empty the caller sleeps until a token is available.

    Example:
        limiter = TokenBucket(rate=2.0, capacity=2)

        async def call_api():
            await limiter.consume()
            ...
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens = float(capacity if initial_tokens is None else initial_tokens)
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, waiting if needed.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True once the tokens were consumed

        Raises:
            RateLimitExceeded: If the request exceeds capacity or would wait too long
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        async with self.lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required_tokens = tokens - self.tokens
            wait_time = required_tokens / self.rate
            if wait_time > MAX_WAIT_SECONDS:
                logger.warning(
                    "rate_limit_wait_too_long",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")

            # Sleep while holding the lock so waiters are served in order
            logger.debug("rate_limit_wait", wait_time=wait_time)
            await asyncio.sleep(wait_time)
            self._refill()
            self.tokens = max(0.0, self.tokens - tokens)
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate)
        self.last_refill = now


_buckets: dict[str, TokenBucket] = {}


def get_bucket(name: str, rate: float | None = None, capacity: int | None = None) -> TokenBucket:
    """Get or create the named token bucket.

    Args:
        name: Bucket name (see DEFAULT_RATES for the standard ones)
        rate: Refill rate if creating a new bucket
        capacity: Capacity if creating a new bucket

    Returns:
        TokenBucket instance shared by every caller using this name
    """
    if name not in _buckets:
        default_rate, default_capacity = DEFAULT_RATES.get(name, (1.0, 1))
        _buckets[name] = TokenBucket(
            rate=rate if rate is not None else default_rate,
            capacity=capacity if capacity is not None else default_capacity,
        )
    return _buckets[name]


def reset_buckets() -> None:
    """Drop all buckets. Primarily for testing."""
    _buckets.clear()
