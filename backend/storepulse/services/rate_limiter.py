"""
Request Rate Limiter
====================

Fixed-window request limiting for public endpoints.

WHY THIS FILE EXISTS
--------------------
Webhook intake and the API are reachable from the internet. Without limits:
- A misbehaving platform retry loop could flood the ingestion pipeline
- Credential stuffing against auth endpoints goes unchecked
- Expensive report/insight generation could be spammed

HOW IT WORKS
------------
- window_start = floor(now / window) * window
- counter key  = "{namespace}:{logical_key}:{window_start}"
- count >= max  -> deny with retry_after = reset_at - now
- otherwise     -> atomically increment and allow

Each endpoint class (api, auth, webhook, insights) gets its own RateLimiter
instance with its own namespace, so counters never collide.

STORES
------
Counters live in an injectable CounterStore:
- InMemoryCounterStore: dict + lock, single-process deployments and tests
- RedisCounterStore: INCR + EXPIRE, shared across workers

If the store fails, the limiter's fail_open flag decides: read paths stay
available (fail open), auth/webhook paths deny (fail closed).

RELATED FILES
-------------
- storepulse/state.py: builds the shared limiters from settings
- storepulse/services/webhook_ingestion.py: webhook bucket per integration
- storepulse/routers/*.py: `rate_limit(...)` dependency
"""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request, status
from redis import Redis
from redis.exceptions import RedisError

from storepulse.exceptions import CounterStoreError

logger = logging.getLogger(__name__)

ANONYMOUS_KEY = "anonymous"

# Probability that a check triggers a sweep of expired in-memory windows
PURGE_PROBABILITY = 0.01


@dataclass(frozen=True)
class RateLimitConfig:
    """
    Rate limit configuration.

    Attributes:
        max_requests: Requests allowed per window
        window_seconds: Window length
        namespace: Counter namespace (one per endpoint class)
        fail_open: Allow requests when the store is unavailable
    """

    max_requests: int
    window_seconds: int
    namespace: str
    fail_open: bool = True


@dataclass
class RateLimitResult:
    """
    Result of a rate limit check.

    Attributes:
        allowed: Whether the request is admitted
        limit: The max that applies
        remaining: Requests left in the current window
        reset_at: Unix time the current window ends
        retry_after: Seconds to wait (only set when denied)
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        """Standard X-RateLimit-* response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


# =============================================================================
# COUNTER STORES
# =============================================================================

class CounterStore(ABC):
    """Storage for per-window counters.

    Implementations must make `increment_if_below` atomic per key: two
    concurrent callers can never both observe count == max - 1 and both pass.
    """

    @abstractmethod
    def increment_if_below(self, key: str, limit: int, expires_at: float) -> Tuple[bool, int]:
        """Increment the counter unless it already reached `limit`.

        Returns:
            (incremented, count after the call)

        Raises:
            CounterStoreError: If the backing store is unavailable
        """

    def purge_expired(self, now: float) -> int:
        """Drop windows that ended before `now`. Returns how many were removed."""
        return 0


class InMemoryCounterStore(CounterStore):
    """Process-local counters guarded by a single lock."""

    def __init__(self):
        self._lock = threading.Lock()
        # key -> (count, window end)
        self._counters: Dict[str, Tuple[int, float]] = {}

    def increment_if_below(self, key: str, limit: int, expires_at: float) -> Tuple[bool, int]:
        with self._lock:
            count, _ = self._counters.get(key, (0, expires_at))
            if count >= limit:
                return False, count
            count += 1
            self._counters[key] = (count, expires_at)
            return True, count

    def purge_expired(self, now: float) -> int:
        with self._lock:
            # A window still running has expires_at > now and is kept
            expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
            for key in expired:
                del self._counters[key]
        if expired:
            logger.debug(f"[RATE_LIMITER] Purged {len(expired)} expired windows")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


class RedisCounterStore(CounterStore):
    """
    Redis-backed counters shared by every API worker.

    HOW:
        INCR is atomic; when the new count overshoots the limit we roll the
        increment back so `remaining` stays accurate. Keys carry a TTL equal
        to the time left in the window (+1s), so Redis expires old windows
        and purge_expired is a no-op.
    """

    def __init__(self, redis_client: Redis, prefix: str = "rate"):
        self.redis = redis_client
        self.prefix = prefix

    def increment_if_below(self, key: str, limit: int, expires_at: float) -> Tuple[bool, int]:
        redis_key = f"{self.prefix}:{key}"
        ttl = max(1, math.ceil(expires_at - time.time()) + 1)
        try:
            pipe = self.redis.pipeline()
            pipe.incr(redis_key)
            pipe.expire(redis_key, ttl)
            count, _ = pipe.execute()
            count = int(count)
            if count > limit:
                self.redis.decr(redis_key)
                return False, limit
            return True, count
        except RedisError as exc:
            raise CounterStoreError(f"Redis counter store unavailable: {exc}") from exc


# =============================================================================
# KEY FUNCTIONS
# =============================================================================

KeyFunc = Callable[[Request], str]


def client_ip_key(request: Request) -> str:
    """Default key: caller IP from proxy headers, falling back to the peer address.

    Precedence: cf-connecting-ip, x-real-ip, first x-forwarded-for entry,
    socket peer, then the shared "anonymous" bucket.
    """
    headers = request.headers
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    if request.client and request.client.host:
        return request.client.host

    return ANONYMOUS_KEY


def auth_attempt_key(request: Request) -> str:
    return f"auth:{client_ip_key(request)}"


def principal_key(request: Request) -> str:
    """Key by bearer token when present so a logged-in user has one bucket."""
    authorization = request.headers.get("authorization")
    if authorization:
        return f"principal:{authorization}"
    return client_ip_key(request)


# =============================================================================
# LIMITER
# =============================================================================

class RateLimiter:
    """
    Fixed-window rate limiter bound to one endpoint class.

    Usage:
        limiter = RateLimiter(RateLimitConfig(5, 60, "auth", fail_open=False), store)
        result = limiter.check("203.0.113.7")
        if not result.allowed:
            # respond 429 with result.retry_after
    """

    def __init__(
        self,
        config: RateLimitConfig,
        store: CounterStore,
        key_func: KeyFunc = client_ip_key,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store
        self.key_func = key_func
        self.clock = clock

    def _window(self, now: float) -> Tuple[float, float]:
        window = self.config.window_seconds
        start = math.floor(now / window) * window
        return start, start + window

    def check(self, key: str) -> RateLimitResult:
        """Count one request against `key` and report whether it is admitted."""
        now = self.clock()
        window_start, reset_at = self._window(now)
        counter_key = f"{self.config.namespace}:{key}:{int(window_start)}"
        limit = self.config.max_requests

        try:
            allowed, count = self.store.increment_if_below(counter_key, limit, reset_at)
        except CounterStoreError as exc:
            return self._on_store_failure(exc, key, reset_at)

        if random.random() < PURGE_PROBABILITY:
            self.store.purge_expired(now)

        if not allowed:
            retry_after = max(1, math.ceil(reset_at - now))
            logger.info(
                f"[RATE_LIMITER] {self.config.namespace} limit hit for {key} "
                f"({count}/{limit}, retry in {retry_after}s)"
            )
            return RateLimitResult(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
            )

        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
        )

    def check_request(self, request: Request) -> RateLimitResult:
        return self.check(self.key_func(request))

    def _on_store_failure(self, exc: CounterStoreError, key: str, reset_at: float) -> RateLimitResult:
        limit = self.config.max_requests
        if self.config.fail_open:
            logger.warning(
                f"[RATE_LIMITER] Store unavailable, failing open for {self.config.namespace}:{key}: {exc}"
            )
            return RateLimitResult(allowed=True, limit=limit, remaining=limit, reset_at=reset_at)

        logger.error(
            f"[RATE_LIMITER] Store unavailable, failing closed for {self.config.namespace}:{key}: {exc}"
        )
        return RateLimitResult(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=reset_at,
            retry_after=self.config.window_seconds,
        )


def rate_limit(limiter_name: str):
    """FastAPI dependency factory enforcing one of the shared limiters.

    Usage:
        @router.post("/generate", dependencies=[Depends(rate_limit("insights"))])

    The limiter is resolved at request time from storepulse.state so tests
    can swap in a limiter backed by a fresh store.
    """

    def dependency(request: Request) -> RateLimitResult:
        from storepulse import state

        limiter = state.get_limiter(limiter_name)
        result = limiter.check_request(request)
        if not result.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers=result.headers(),
            )
        return result

    return dependency
