"""Token-bucket rate limiter for API clients."""

import threading
import time
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

from kubeprov.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class TokenBucket:
    """Thread-safe token bucket rate limiter.

    - Bucket holds up to `capacity` tokens
    - Tokens refill at `refill_rate` tokens per second
    - Each call consumes 1 token
    - If no tokens are available, the caller waits up to `max_wait` seconds
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        max_wait: float = 60.0,
    ):
        """Initialize token bucket.

        Args:
            capacity: Maximum number of tokens in bucket
            refill_rate: Tokens added per second
            max_wait: Maximum time to wait for a token (seconds)
        """
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")

        self.capacity = capacity
        self.refill_rate = refill_rate
        self.max_wait = max_wait

        self._tokens = float(capacity)
        self._lock = threading.Lock()
        self._last_refill = time.monotonic()

    @classmethod
    def per_minute(cls, requests_per_minute: int, max_wait: float = 120.0) -> "TokenBucket":
        """Build a bucket from a requests-per-minute budget."""
        return cls(
            capacity=requests_per_minute,
            refill_rate=requests_per_minute / 60.0,
            max_wait=max_wait,
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def acquire(self, tokens: int = 1, wait: bool = True) -> bool:
        """Acquire tokens from the bucket.

        Args:
            tokens: Number of tokens to acquire
            wait: Whether to wait for tokens if unavailable

        Returns:
            True if tokens acquired, False if not available and wait=False

        Raises:
            TimeoutError: If waiting exceeds max_wait
        """
        start_time = time.monotonic()

        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return True

            if not wait:
                logger.warning("tokens_unavailable", requested=tokens)
                return False

            elapsed = time.monotonic() - start_time
            if elapsed >= self.max_wait:
                logger.error("token_acquisition_timeout", elapsed=elapsed, max_wait=self.max_wait)
                raise TimeoutError(f"Rate limit: waited {elapsed:.1f}s for tokens")

            time.sleep(0.1)

    def get_available_tokens(self) -> float:
        """Get current number of available tokens."""
        with self._lock:
            self._refill()
            return self._tokens


def rate_limited(func: F) -> F:
    """Acquire a token from ``self.rate_limiter`` before calling the method.

    Methods of objects without a ``rate_limiter`` attribute (or with None) run
    unthrottled.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        limiter = getattr(self, "rate_limiter", None)
        if limiter is not None:
            limiter.acquire()
        return func(self, *args, **kwargs)

    return wrapper  # type: ignore
