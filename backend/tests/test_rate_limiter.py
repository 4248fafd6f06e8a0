import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeClock
from fileuploader.core.security import AuthClaims
from fileuploader.services.rate_limiter import SlidingWindowRateLimiter, rate_limit_key


def test_allows_up_to_limit_then_rejects():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(3, clock=clock)

    assert [limiter.allow("u1") for _ in range(3)] == [True, True, True]
    assert limiter.allow("u1") is False


def test_window_slides_per_request():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, clock=clock)

    assert limiter.allow("u1")
    clock.advance(30)
    assert limiter.allow("u1")
    clock.advance(29)
    assert not limiter.allow("u1")

    # The first request leaves the trailing minute; the second is still inside it.
    clock.advance(1)
    assert limiter.allow("u1")
    assert not limiter.allow("u1")


def test_rejected_requests_do_not_extend_the_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(1, clock=clock)

    assert limiter.allow("u1")
    for _ in range(5):
        clock.advance(10)
        assert not limiter.allow("u1")
    clock.advance(10)
    assert limiter.allow("u1")


def test_keys_are_independent():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(1, clock=clock)

    assert limiter.allow("u1")
    assert not limiter.allow("u1")
    assert limiter.allow("u2")


def test_retry_after_reports_time_until_oldest_entry_expires():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(1, clock=clock)

    assert limiter.retry_after("u1") == 0
    limiter.allow("u1")
    clock.advance(15)

    assert limiter.retry_after("u1") == pytest.approx(45)


def test_sweep_drops_idle_windows_only():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(5, clock=clock)
    limiter.allow("idle")
    clock.advance(61)
    limiter.allow("active")

    assert limiter.sweep() == 1
    assert limiter.window_count() == 1
    assert limiter.allow("idle")


def test_periodic_sweep_keeps_memory_bounded():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(1, clock=clock, sweep_every=10)
    for i in range(10):
        limiter.allow(f"client-{i}")
    clock.advance(61)

    for i in range(10):
        limiter.allow(f"other-{i}")

    assert limiter.window_count() <= 10


def test_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(0)


def test_concurrent_requests_never_exceed_limit():
    limiter = SlidingWindowRateLimiter(50, sweep_every=7)
    accepted: dict[str, int] = {"a": 0, "b": 0}
    counter_lock = threading.Lock()
    start = threading.Barrier(16)

    def worker(key: str) -> None:
        start.wait()
        for _ in range(20):
            if limiter.allow(key):
                with counter_lock:
                    accepted[key] += 1

    threads = [threading.Thread(target=worker, args=("a" if i % 2 else "b",)) for i in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert accepted == {"a": 50, "b": 50}


def test_rate_limit_key_prefers_subject():
    now = datetime.now(timezone.utc)
    claims = AuthClaims(subject_id="u1", issued_at=now, expires_at=now + timedelta(hours=1))

    assert rate_limit_key(claims, "10.0.0.1") == "subject:u1"
    assert rate_limit_key(None, "10.0.0.1") == "client:10.0.0.1"
    assert rate_limit_key(None, None) == "anonymous"


def test_empty_limiter_is_truthy():
    limiter = SlidingWindowRateLimiter(2)

    assert limiter.window_count() == 0
    assert bool(limiter) is True
