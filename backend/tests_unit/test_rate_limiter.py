"""
Rate Limiter Tests (Unit)
=========================

WHAT: Unit tests for the sliding-window limiter and Meta usage headers.
WHY: Long backfills must slow down before Meta starts returning code 17.

REFERENCES:
- backend/adpulse/services/rate_limiter.py
"""

import json
import threading

from adpulse.services.rate_limiter import SlidingWindowRateLimiter


class _FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _limiter(max_requests: int = 3, window: float = 60) -> tuple:
    clock = _FakeClock()
    limiter = SlidingWindowRateLimiter(
        max_requests=max_requests,
        window_seconds=window,
        clock=clock,
        sleeper=clock.sleep,
    )
    return limiter, clock


def test_allows_requests_under_limit() -> None:
    limiter, _ = _limiter()

    for _ in range(3):
        assert limiter.check().allowed
        limiter.record()

    assert limiter.remaining() == 0


def test_blocks_when_window_full_and_reports_retry_after() -> None:
    limiter, clock = _limiter()
    for _ in range(3):
        limiter.record()
        clock.now += 10

    decision = limiter.check()

    assert not decision.allowed
    # Oldest request was at t=1000, window 60s, now t=1030
    assert decision.retry_after == 30


def test_wait_sleeps_until_window_frees_up() -> None:
    limiter, clock = _limiter(max_requests=1)
    limiter.record()

    limiter.wait()

    assert clock.sleeps == [60]
    assert limiter.check().allowed


def test_acquire_counts_the_request_it_waited_for() -> None:
    limiter, clock = _limiter(max_requests=1)

    limiter.acquire()
    limiter.acquire()

    assert clock.sleeps == [60]
    assert limiter.remaining() == 0


class _Blocked(Exception):
    pass


def test_concurrent_acquire_never_overshoots_the_window() -> None:
    def refuse_to_sleep(seconds: float) -> None:
        raise _Blocked()

    limiter = SlidingWindowRateLimiter(
        max_requests=5,
        window_seconds=60,
        clock=lambda: 1_000.0,
        sleeper=refuse_to_sleep,
    )
    start = threading.Barrier(20)
    granted = []
    blocked = []

    def worker() -> None:
        start.wait()
        try:
            limiter.acquire()
            granted.append(1)
        except _Blocked:
            blocked.append(1)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(granted) == 5
    assert len(blocked) == 15
    assert limiter.remaining() == 0
    assert len(limiter._requests) == 5


def test_requests_expire_after_window() -> None:
    limiter, clock = _limiter(max_requests=2)
    limiter.record()
    limiter.record()

    clock.now += 61

    assert limiter.remaining() == 2
    assert limiter.next_reset() is None


def test_platform_usage_tightens_budget() -> None:
    limiter, clock = _limiter(max_requests=100, window=3600)

    limiter.update_from_usage(100, regain_seconds=120)

    decision = limiter.check()
    assert not decision.allowed
    assert decision.retry_after == 120

    clock.now += 121
    assert limiter.check().allowed


def test_update_from_meta_headers() -> None:
    limiter, _ = _limiter(max_requests=200, window=3600)
    headers = {
        "X-Business-Use-Case-Usage": json.dumps({
            "123": [{"call_count": 90, "total_cputime": 10, "total_time": 20, "estimated_time_to_regain_access": 0}]
        }),
        "X-App-Usage": json.dumps({"call_count": 40, "total_cputime": 5, "total_time": 5}),
    }

    limiter.update_from_headers(headers)

    assert limiter.remaining() == 20


def test_headers_without_usage_are_ignored() -> None:
    limiter, _ = _limiter(max_requests=5)

    limiter.update_from_headers({"content-type": "application/json"})
    limiter.update_from_headers(None)

    assert limiter.remaining() == 5
