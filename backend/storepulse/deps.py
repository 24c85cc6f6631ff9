"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"

    # Webhook signing secrets (shared secrets configured on each platform)
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    # Stripe-style replay protection window
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Rate limiting
    # memory = per-process counters, redis = shared counters across workers
    RATE_LIMIT_BACKEND: str = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    API_RATE_LIMIT: int = 100
    API_RATE_WINDOW_SECONDS: int = 15 * 60
    AUTH_RATE_LIMIT: int = 5
    AUTH_RATE_WINDOW_SECONDS: int = 15 * 60
    WEBHOOK_RATE_LIMIT: int = 1000
    WEBHOOK_RATE_WINDOW_SECONDS: int = 60
    INSIGHTS_RATE_LIMIT: int = 10
    INSIGHTS_RATE_WINDOW_SECONDS: int = 60

    # Historical sync
    # inprocess = SyncSupervisor inside the API, arq = queued on the ARQ worker
    SYNC_BACKEND: str = "inprocess"
    BACKFILL_DAYS: int = 30
    PLATFORM_HTTP_TIMEOUT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def require_admin(x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")) -> None:
    """Guard destructive endpoints (report/insight deletion).

    User sessions are handled by the upstream auth service; the only
    privilege checked here is the operator key.
    """
    if not x_admin_key or x_admin_key != get_settings().ADMIN_SECRET_KEY:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin key required")


def get_organization_or_404(db, org_id):
    """Load an Organization or raise 404.

    Organization CRUD lives upstream; routers only need the anchor row.
    """
    from storepulse.models import Organization

    organization = db.get(Organization, org_id)
    if organization is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found")
    return organization
