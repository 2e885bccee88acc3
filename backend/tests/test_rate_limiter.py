import threading
import time

import pytest

from mailsync.exceptions import RateLimitTimeout
from mailsync.rate_limiter import GMAIL_API, TokenBucket, get_rate_limiter, reset_rate_limiters


class FakeClock:
    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _bucket(capacity=12, rate=3.0):
    clock = FakeClock()
    return TokenBucket(capacity, rate, clock=clock, sleep=clock.sleep), clock


def test_full_bucket_serves_a_burst_then_waits_for_refill():
    bucket, clock = _bucket()

    bucket.wait(12)
    assert clock.sleeps == []

    bucket.wait(1)
    assert len(clock.sleeps) == 1
    assert clock.sleeps[0] == pytest.approx(1 / 3)


def test_refill_is_capped_at_capacity():
    bucket, clock = _bucket()
    bucket.wait(5)
    clock.now += 3600
    assert bucket.available == pytest.approx(12)


def test_wait_times_out_when_tokens_cannot_arrive_in_time():
    bucket, clock = _bucket()
    bucket.wait(12)

    with pytest.raises(RateLimitTimeout):
        bucket.wait(6, timeout=0.5)
    # Slept only up to the deadline, and did not withdraw anything
    assert clock.sleeps == [pytest.approx(0.5)]
    assert bucket.available == pytest.approx(1.5)


def test_request_larger_than_capacity_is_rejected():
    bucket, _ = _bucket()
    with pytest.raises(ValueError):
        bucket.wait(13)


def test_zero_token_request_is_free():
    bucket, clock = _bucket()
    bucket.wait(12)
    bucket.wait(0)
    assert clock.sleeps == []


def test_concurrent_callers_never_overdraw():
    """8 threads x 10 tokens through a 10-token bucket refilling at 200/s takes >= 0.35s."""
    bucket = TokenBucket(10, 200.0)
    errors = []

    def worker():
        try:
            for _ in range(10):
                bucket.wait(1, timeout=5)
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    start = time.monotonic()
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    elapsed = time.monotonic() - start

    assert errors == []
    assert elapsed >= (80 - 10) / 200.0 * 0.9
    assert bucket._tokens >= 0


def test_registry_returns_one_bucket_per_key():
    reset_rate_limiters()
    a = get_rate_limiter(GMAIL_API)
    b = get_rate_limiter(GMAIL_API)
    c = get_rate_limiter("google-calendar-api")
    assert a is b
    assert a is not c
    assert a.capacity == 12
    assert a.refill_rate == pytest.approx(3.0)
