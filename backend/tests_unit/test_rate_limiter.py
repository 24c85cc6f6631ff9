"""
Rate Limiter Tests (Unit)
=========================

WHAT: Fixed-window counting, window rollover, store failure modes.
WHY: Off-by-one here means either a sixth login attempt slips through or
     legitimate webhook retries get dropped.

REFERENCES:
- backend/storepulse/services/rate_limiter.py
"""

from typing import Tuple

import pytest

from storepulse.exceptions import CounterStoreError
from storepulse.services import rate_limiter as rate_limiter_module
from storepulse.services.rate_limiter import (
    CounterStore,
    InMemoryCounterStore,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
)


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenStore(CounterStore):
    def increment_if_below(self, key: str, limit: int, expires_at: float) -> Tuple[bool, int]:
        raise CounterStoreError("connection refused")


@pytest.fixture(autouse=True)
def no_random_purge(monkeypatch):
    monkeypatch.setattr(rate_limiter_module, "PURGE_PROBABILITY", 0.0)


def _limiter(max_requests=5, window=60, fail_open=True, store=None, clock=None) -> RateLimiter:
    return RateLimiter(
        RateLimitConfig(max_requests, window, "auth", fail_open=fail_open),
        store or InMemoryCounterStore(),
        clock=clock or FakeClock(1_000_040.0),
    )


def test_sixth_request_in_window_is_denied() -> None:
    limiter = _limiter()

    results = [limiter.check("203.0.113.7") for _ in range(6)]

    assert [r.allowed for r in results] == [True] * 5 + [False]
    assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
    assert results[5].retry_after == 40


def test_next_window_starts_fresh() -> None:
    clock = FakeClock(1_000_040.0)
    limiter = _limiter(clock=clock)
    for _ in range(5):
        limiter.check("203.0.113.7")
    assert not limiter.check("203.0.113.7").allowed

    clock.now = 1_000_080.0

    assert limiter.check("203.0.113.7").allowed


def test_keys_and_namespaces_are_independent() -> None:
    store = InMemoryCounterStore()
    clock = FakeClock(1_000_040.0)
    auth = _limiter(max_requests=1, store=store, clock=clock)
    webhook = RateLimiter(RateLimitConfig(1, 60, "webhook"), store, clock=clock)

    assert auth.check("a").allowed
    assert auth.check("b").allowed
    assert webhook.check("a").allowed
    assert not auth.check("a").allowed


def test_store_failure_fails_open_when_configured() -> None:
    result = _limiter(fail_open=True, store=BrokenStore()).check("k")

    assert result.allowed
    assert result.remaining == 5


def test_store_failure_fails_closed_when_configured() -> None:
    result = _limiter(fail_open=False, store=BrokenStore()).check("k")

    assert not result.allowed
    assert result.retry_after == 60


def test_purge_keeps_the_active_window() -> None:
    store = InMemoryCounterStore()
    store.increment_if_below("auth:old:0", 5, expires_at=60.0)
    store.increment_if_below("auth:new:60", 5, expires_at=120.0)

    removed = store.purge_expired(now=90.0)

    assert removed == 1
    assert len(store) == 1
    # The surviving window keeps counting from where it was
    assert store.increment_if_below("auth:new:60", 5, expires_at=120.0) == (True, 2)


def test_in_memory_store_never_exceeds_limit() -> None:
    store = InMemoryCounterStore()

    outcomes = [store.increment_if_below("k", 2, 100.0) for _ in range(4)]

    assert outcomes == [(True, 1), (True, 2), (False, 2), (False, 2)]


def test_result_headers() -> None:
    denied = RateLimitResult(allowed=False, limit=5, remaining=0, reset_at=1060.7, retry_after=40)
    allowed = RateLimitResult(allowed=True, limit=5, remaining=3, reset_at=1060.0)

    assert denied.headers() == {
        "X-RateLimit-Limit": "5",
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": "1060",
        "Retry-After": "40",
    }
    assert "Retry-After" not in allowed.headers()
