"""Token bucket rate limiter, one bucket per upstream provider key.

Capacity C bounds bursts; tokens refill continuously at R per second. Callers
declare the token cost of each upstream call at the call site.
"""
import logging
import threading
import time
from typing import Callable, Optional

from .config import settings
from .exceptions import RateLimitTimeout

logger = logging.getLogger(__name__)

GMAIL_API = "gmail-api"
CALENDAR_API = "google-calendar-api"
CONTACTS_API = "google-contacts-api"


class TokenBucket:
    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        # Held across the sleep so waiters withdraw in arrival order and never overdraw.
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def wait(self, tokens: int = 1, timeout: Optional[float] = None) -> None:
        """Block until `tokens` are withdrawn, or raise RateLimitTimeout."""
        if tokens <= 0:
            return
        if tokens > self.capacity:
            raise ValueError(f"Requested {tokens} tokens exceeds bucket capacity {self.capacity}")

        deadline = None if timeout is None else self._clock() + timeout
        if deadline is None:
            acquired = self._lock.acquire()
        else:
            acquired = self._lock.acquire(timeout=max(0.0, timeout))
        if not acquired:
            raise RateLimitTimeout(f"Timed out waiting for {tokens} rate limit tokens")
        try:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return

            wait_s = (tokens - self._tokens) / self.refill_rate
            if deadline is not None:
                wait_s = min(wait_s, max(0.0, deadline - self._clock()))
            logger.debug(f"Rate limiter waiting {wait_s:.3f}s for {tokens} tokens")
            self._sleep(wait_s)
            self._refill()
            # Float rounding can leave us a hair short after a full-length sleep.
            if self._tokens + 1e-9 >= tokens:
                self._tokens = max(0.0, self._tokens - tokens)
                return
            raise RateLimitTimeout(
                f"Timed out waiting for {tokens} rate limit tokens ({self._tokens:.2f} available)"
            )
        finally:
            self._lock.release()


_registry: dict[str, TokenBucket] = {}
_registry_lock = threading.Lock()


def get_rate_limiter(key: str) -> TokenBucket:
    """Process-wide bucket for a provider key, created on first use."""
    with _registry_lock:
        bucket = _registry.get(key)
        if bucket is None:
            bucket = TokenBucket(settings.rate_limit_capacity, settings.rate_limit_refill_per_second)
            _registry[key] = bucket
        return bucket


def reset_rate_limiters() -> None:
    """Drop all buckets (tests, config reloads)."""
    with _registry_lock:
        _registry.clear()
