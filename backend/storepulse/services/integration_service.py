"""Integration lifecycle: connect, disconnect, backfill.

WHAT:
    - connect: create or reactivate the one integration an organization may
      have per platform, with encrypted credentials
    - disconnect: soft delete (status `disconnected`, credentials cleared,
      DataPoints kept)
    - schedule_backfill: start a supervised historical sync

WHY:
    Routers, webhook lifecycle topics (app/uninstalled) and the worker all
    change integration state; keeping the transitions here keeps them
    consistent (e.g. disconnect always clears credentials).

RELATED FILES:
    - storepulse/routers/integrations.py
    - storepulse/services/webhook_ingestion.py (app/uninstalled, shop/redact)
    - storepulse/services/historical_sync.py
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from storepulse.exceptions import IntegrationNotFoundError
from storepulse.models import Integration, IntegrationStatusEnum, PlatformEnum, utcnow
from storepulse.security import encrypt_secret
from storepulse.services.historical_sync import (
    FETCHERS,
    SessionFactory,
    record_sync_failure,
    run_backfill,
)
from storepulse.services.sync_supervisor import SyncSupervisor

logger = logging.getLogger(__name__)


def backfill_task_name(integration_id: UUID) -> str:
    return f"backfill:{integration_id}"


def supports_backfill(platform: PlatformEnum) -> bool:
    return platform in FETCHERS


def get_integration(db: Session, organization_id: UUID, integration_id: UUID) -> Integration:
    """Load an organization's integration.

    Raises:
        IntegrationNotFoundError: Unknown id or owned by another organization
    """
    integration = db.get(Integration, integration_id)
    if integration is None or integration.organization_id != organization_id:
        raise IntegrationNotFoundError(f"Integration {integration_id} not found", str(integration_id))
    return integration


def connected_integration_ids(db: Session, organization_id: UUID) -> List[UUID]:
    """Integrations that contribute data (everything except disconnected)."""
    stmt = select(Integration.id).where(
        Integration.organization_id == organization_id,
        Integration.status != IntegrationStatusEnum.disconnected,
    )
    return list(db.execute(stmt).scalars().all())


def connect(
    db: Session,
    organization_id: UUID,
    platform: PlatformEnum,
    credentials: str,
    platform_account_id: Optional[str] = None,
) -> Integration:
    """Create the (organization, platform) integration or reactivate it.

    Raises:
        CredentialError: Empty credentials
    """
    credentials_enc = encrypt_secret(credentials, context=f"{platform.value}:{platform_account_id}")

    integration = db.execute(
        select(Integration).where(
            Integration.organization_id == organization_id,
            Integration.platform == platform,
        )
    ).scalars().first()

    if integration is None:
        integration = Integration(organization_id=organization_id, platform=platform)
        db.add(integration)
        logger.info(f"[INTEGRATIONS] Connecting {platform.value} for organization {organization_id}")
    else:
        logger.info(f"[INTEGRATIONS] Reconnecting {platform.value} integration {integration.id}")

    integration.platform_account_id = platform_account_id
    integration.credentials_enc = credentials_enc
    integration.status = IntegrationStatusEnum.active
    integration.last_sync_error = None
    integration.disconnected_at = None
    db.commit()
    db.refresh(integration)
    return integration


def soft_disconnect(db: Session, integration: Integration, reason: str = "user") -> Integration:
    """Stop using an integration without losing its history."""
    integration.status = IntegrationStatusEnum.disconnected
    integration.credentials_enc = None
    integration.disconnected_at = utcnow()
    db.commit()
    logger.info(f"[INTEGRATIONS] Integration {integration.id} disconnected ({reason})")
    return integration


def disconnect(db: Session, organization_id: UUID, integration_id: UUID) -> Integration:
    return soft_disconnect(db, get_integration(db, organization_id, integration_id))


def schedule_backfill(
    supervisor: SyncSupervisor,
    integration_id: UUID,
    days: Optional[int] = None,
    session_factory: Optional[SessionFactory] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> asyncio.Task:
    """Spawn a supervised backfill; failures land on the integration row.

    Must be called from a running event loop (async endpoint).
    """

    def on_error(exc: BaseException) -> None:
        record_sync_failure(integration_id, exc, session_factory=session_factory)

    return supervisor.spawn(
        backfill_task_name(integration_id),
        run_backfill(integration_id, days=days, session_factory=session_factory, transport=transport),
        on_error=on_error,
    )
