"""
Application State
=================

Process-wide objects that must outlive a single request.

WHAT it stores:
- limiters: one RateLimiter per endpoint class (api, auth, webhook, insights)
- counter_store: the CounterStore backing those limiters
- redis_client: shared Redis client when RATE_LIMIT_BACKEND=redis
- sync_supervisor: registry of fire-and-forget historical syncs

WHERE it's used:
- storepulse/main.py: builds state on startup, drains syncs on shutdown
- storepulse/services/rate_limiter.py: `rate_limit()` dependency
- storepulse/routers/webhooks.py: webhook limiter
- storepulse/routers/integrations.py: spawns backfills

Design:
- Counters are NOT module-level globals inside the limiter: the store is
  injected, and tests call `configure_limiters(InMemoryCounterStore())` to
  get a fresh namespace per case.
"""

import logging
from typing import Dict, Optional

from redis import Redis, ConnectionPool

from storepulse.deps import get_settings, Settings
from storepulse.services.rate_limiter import (
    CounterStore,
    InMemoryCounterStore,
    RateLimitConfig,
    RateLimiter,
    RedisCounterStore,
    auth_attempt_key,
    client_ip_key,
    principal_key,
)
from storepulse.services.sync_supervisor import SyncSupervisor

logger = logging.getLogger(__name__)

redis_pool: ConnectionPool | None = None
redis_client: Redis | None = None

counter_store: Optional[CounterStore] = None
limiters: Dict[str, RateLimiter] = {}

sync_supervisor = SyncSupervisor()


def build_counter_store(settings: Settings) -> CounterStore:
    """Pick the counter backend from settings (memory unless redis is asked for)."""
    global redis_pool, redis_client

    if settings.RATE_LIMIT_BACKEND.lower() == "redis":
        redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=False,
        )
        redis_client = Redis(connection_pool=redis_pool)
        logger.info("[STATE] Redis rate-limit store initialized")
        return RedisCounterStore(redis_client)

    logger.info("[STATE] In-memory rate-limit store initialized")
    return InMemoryCounterStore()


def configure_limiters(store: CounterStore, settings: Optional[Settings] = None) -> Dict[str, RateLimiter]:
    """(Re)build every limiter on top of `store`.

    Webhook and auth limiters fail closed: an unverifiable flood must not
    reach the ingestion pipeline. API and insights reads fail open.
    """
    global counter_store, limiters

    settings = settings or get_settings()
    counter_store = store
    limiters = {
        "api": RateLimiter(
            RateLimitConfig(settings.API_RATE_LIMIT, settings.API_RATE_WINDOW_SECONDS, "api", fail_open=True),
            store,
            key_func=client_ip_key,
        ),
        "auth": RateLimiter(
            RateLimitConfig(settings.AUTH_RATE_LIMIT, settings.AUTH_RATE_WINDOW_SECONDS, "auth", fail_open=False),
            store,
            key_func=auth_attempt_key,
        ),
        "webhook": RateLimiter(
            RateLimitConfig(settings.WEBHOOK_RATE_LIMIT, settings.WEBHOOK_RATE_WINDOW_SECONDS, "webhook", fail_open=False),
            store,
            key_func=client_ip_key,
        ),
        "insights": RateLimiter(
            RateLimitConfig(settings.INSIGHTS_RATE_LIMIT, settings.INSIGHTS_RATE_WINDOW_SECONDS, "insights", fail_open=True),
            store,
            key_func=principal_key,
        ),
    }
    return limiters


def get_limiter(name: str) -> RateLimiter:
    if not limiters:
        configure_limiters(build_counter_store(get_settings()))
    return limiters[name]
