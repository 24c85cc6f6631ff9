"""Historical backfill of platform data into DataPoints.

WHAT:
    Pulls the last N days of orders / charges / customers for one integration
    and writes them through the same extractor the webhooks use, tagged
    `source: shopify_sync` / `stripe_sync`. Google Analytics has no webhooks;
    its daily `sessions` only arrive this way (`source: google_analytics_sync`).

WHY:
    - A freshly connected store would otherwise show an empty dashboard and no
      comparison period until weeks of webhooks accumulate
    - Sharing the extractor keeps webhook and backfill rows identical in shape

IDEMPOTENCY:
    Re-running a backfill (manual sync, retried job) must not double count.
    Records already present for the integration (from webhooks or an earlier
    sync) are skipped by identity: payment intent, order, charge or customer
    id, or the day of a sessions row, in that order of preference.

FAILURE:
    Errors propagate to the caller (SyncSupervisor or the ARQ job), which
    records them with `record_sync_failure`.

RELATED FILES:
    - storepulse/services/platform_clients.py: REST clients
    - storepulse/services/sync_supervisor.py: in-process runner
    - storepulse/workers/arq_worker.py: queued runner
"""

from __future__ import annotations

import logging
import time
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Set, Tuple
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from storepulse.deps import get_settings
from storepulse.exceptions import IntegrationNotFoundError, PlatformApiError, StorePulseError
from storepulse.models import DataPoint, Integration, IntegrationStatusEnum, PlatformEnum, utcnow
from storepulse.security import decrypt_secret
from storepulse.services.metric_extractor import (
    DataPointDraft,
    extract_customer,
    extract_shopify_order,
    extract_stripe_charge,
)
from storepulse.services.metric_store import SqlMetricStore
from storepulse.services.platform_clients import GoogleAnalyticsClient, ShopifyRestClient, StripeClient

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager]

IDENTITY_KEYS = ("payment_intent_id", "order_id", "charge_id", "customer_id", "session_date")


@dataclass
class BackfillStats:
    integration_id: str
    platform: str
    records_fetched: int = 0
    data_points_written: int = 0
    data_points_skipped: int = 0
    duration_seconds: float = 0.0


def _default_session_factory() -> AbstractContextManager:
    from storepulse.database import get_sync_session

    return get_sync_session()


def identity_of(metric_type: str, metadata: dict) -> Optional[Tuple[str, str]]:
    for key in IDENTITY_KEYS:
        value = metadata.get(key) if metadata else None
        if value not in (None, "", "None"):
            return metric_type, f"{key}:{value}"
    return None


def _existing_identities(db: Session, integration_id: UUID, since: datetime) -> Set[Tuple[str, str]]:
    stmt = select(DataPoint.metric_type, DataPoint.meta).where(
        DataPoint.integration_id == integration_id,
        DataPoint.date_recorded >= since,
    )
    identities = set()
    for metric_type, meta in db.execute(stmt).all():
        identity = identity_of(metric_type, meta or {})
        if identity:
            identities.add(identity)
    return identities


# =============================================================================
# PLATFORM FETCHERS
# =============================================================================

async def _fetch_shopify(
    integration: Integration,
    credentials: str,
    since: datetime,
    now: datetime,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport],
) -> Tuple[int, List[DataPointDraft]]:
    if not integration.platform_account_id:
        raise PlatformApiError("shopify", "Integration has no shop domain")

    async with ShopifyRestClient(
        integration.platform_account_id, credentials, timeout=timeout, transport=transport
    ) as client:
        orders = await client.list_orders(created_at_min=since)
        customers = await client.list_customers(created_at_min=since)

    drafts: List[DataPointDraft] = []
    for order in orders:
        drafts.extend(extract_shopify_order(order, now, source="shopify_sync"))
    for customer in customers:
        drafts.extend(extract_customer(customer, now, source="shopify_sync"))
    return len(orders) + len(customers), drafts


async def _fetch_stripe(
    integration: Integration,
    credentials: str,
    since: datetime,
    now: datetime,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport],
) -> Tuple[int, List[DataPointDraft]]:
    async with StripeClient(credentials, timeout=timeout, transport=transport) as client:
        charges = await client.list_charges(created_gte=since)
        customers = await client.list_customers(created_gte=since)

    drafts: List[DataPointDraft] = []
    for charge in charges:
        drafts.extend(extract_stripe_charge(charge, now, source="stripe_sync"))
    for customer in customers:
        drafts.extend(extract_customer(customer, now, source="stripe_sync"))
    return len(charges) + len(customers), drafts


async def _fetch_google_analytics(
    integration: Integration,
    credentials: str,
    since: datetime,
    now: datetime,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport],
) -> Tuple[int, List[DataPointDraft]]:
    """Daily sessions; today is left out until the day is complete."""
    if not integration.platform_account_id:
        raise PlatformApiError("google_analytics", "Integration has no GA4 property id")

    last_full_day = (now - timedelta(days=1)).date()
    if last_full_day < since.date():
        return 0, []

    async with GoogleAnalyticsClient(
        integration.platform_account_id, credentials, timeout=timeout, transport=transport
    ) as client:
        days = await client.daily_sessions(since.date(), last_full_day)

    drafts: List[DataPointDraft] = []
    for day, sessions in days:
        when = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        # A partial first day would escape the identity lookup on the next run
        if when < since or sessions < 0:
            continue
        drafts.append(
            DataPointDraft(
                "sessions",
                Decimal(sessions),
                when,
                {"session_date": day.isoformat(), "source": "google_analytics_sync"},
            )
        )
    return len(days), drafts


FETCHERS = {
    PlatformEnum.shopify: _fetch_shopify,
    PlatformEnum.stripe: _fetch_stripe,
    PlatformEnum.google_analytics: _fetch_google_analytics,
}


# =============================================================================
# ENTRY POINTS
# =============================================================================

async def run_backfill(
    integration_id: UUID,
    days: Optional[int] = None,
    session_factory: Optional[SessionFactory] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BackfillStats:
    """Backfill one integration.

    Args:
        integration_id: Integration to sync
        days: How far back (default BACKFILL_DAYS)
        session_factory: Context manager factory yielding a Session
        transport: httpx transport override (tests)

    Raises:
        IntegrationNotFoundError, CredentialError, PlatformApiError
    """
    settings = get_settings()
    days = days or settings.BACKFILL_DAYS
    session_factory = session_factory or _default_session_factory
    started = time.monotonic()

    with session_factory() as db:
        integration = db.get(Integration, integration_id)
        if integration is None:
            raise IntegrationNotFoundError(f"Integration {integration_id} not found", str(integration_id))

        stats = BackfillStats(integration_id=str(integration.id), platform=integration.platform.value)
        if integration.status == IntegrationStatusEnum.disconnected:
            logger.info(f"[SYNC] Integration {integration.id} is disconnected, skipping backfill")
            return stats

        fetcher = FETCHERS.get(integration.platform)
        if fetcher is None:
            raise PlatformApiError(integration.platform.value, "Historical sync is not supported for this platform")

        credentials = decrypt_secret(
            integration.credentials_enc,
            context=f"{integration.platform.value}:{integration.platform_account_id}",
        )

        now = datetime.now(timezone.utc)
        since = now - timedelta(days=days)
        logger.info(f"[SYNC] Backfilling {integration.platform.value} integration {integration.id} since {since.date()}")

        fetched, drafts = await fetcher(
            integration, credentials, since, now, settings.PLATFORM_HTTP_TIMEOUT_SECONDS, transport
        )
        stats.records_fetched = fetched

        seen = _existing_identities(db, integration.id, since)
        fresh: List[DataPointDraft] = []
        for draft in drafts:
            identity = identity_of(draft.metric_type, draft.metadata)
            if identity is not None and identity in seen:
                stats.data_points_skipped += 1
                continue
            if identity is not None:
                seen.add(identity)
            fresh.append(draft)

        SqlMetricStore(db).add_data_points(integration.id, fresh)
        integration.status = IntegrationStatusEnum.active
        integration.last_sync_at = utcnow()
        integration.last_sync_error = None
        db.commit()

        stats.data_points_written = len(fresh)
        stats.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            f"[SYNC] Integration {integration.id}: {stats.data_points_written} data points written, "
            f"{stats.data_points_skipped} already present ({stats.duration_seconds}s)"
        )
        return stats


def record_sync_failure(
    integration_id: UUID,
    error: BaseException,
    session_factory: Optional[SessionFactory] = None,
) -> None:
    """Surface a failed backfill on the integration (status `error`)."""
    session_factory = session_factory or _default_session_factory
    message = error.to_user_message() if isinstance(error, StorePulseError) else f"{type(error).__name__}: {error}"

    with session_factory() as db:
        integration = db.get(Integration, integration_id)
        if integration is None:
            logger.warning(f"[SYNC] Cannot record failure, integration {integration_id} no longer exists")
            return
        if integration.status != IntegrationStatusEnum.disconnected:
            integration.status = IntegrationStatusEnum.error
        integration.last_sync_error = message[:2000]
        db.commit()
        logger.warning(f"[SYNC] Integration {integration_id} marked error: {message}")
