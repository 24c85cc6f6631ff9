"""
Integrations Router
===================

WHAT: Connect, list, disconnect and re-sync platform integrations
WHY: Connecting a store is the first thing an organization does; the
     historical backfill starts right away so the dashboard is not empty

ENDPOINTS:
    POST   /organizations/{org_id}/integrations              connect + start backfill
    GET    /organizations/{org_id}/integrations
    DELETE /organizations/{org_id}/integrations/{id}         soft disconnect
    POST   /organizations/{org_id}/integrations/{id}/sync    manual re-sync

Connect and sync stay async (they spawn tasks or await the ARQ pool); their
DB calls go through run_in_threadpool. The rest are plain `def`.

SYNC BACKENDS (settings.SYNC_BACKEND):
    inprocess  supervised asyncio task inside the API process
    arq        job on the Redis queue, picked up by start_arq_worker.py
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select
from sqlalchemy.orm import Session

from storepulse import state
from storepulse.database import get_db
from storepulse.deps import get_organization_or_404, get_settings
from storepulse.exceptions import CredentialError, IntegrationNotFoundError
from storepulse.models import Integration, IntegrationStatusEnum
from storepulse.schemas import (
    IntegrationConnect,
    IntegrationConnectResponse,
    IntegrationOut,
    SyncStatusOut,
)
from storepulse.services.integration_service import (
    backfill_task_name,
    connect,
    disconnect,
    get_integration,
    schedule_backfill,
    supports_backfill,
)
from storepulse.services.rate_limiter import rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/organizations/{org_id}/integrations", tags=["Integrations"])


async def start_sync(integration: Integration) -> SyncStatusOut:
    """Kick off a backfill on the configured backend."""
    if not supports_backfill(integration.platform):
        return SyncStatusOut(status="not_supported")

    if get_settings().SYNC_BACKEND == "arq":
        from storepulse.workers.arq_enqueue import enqueue_backfill_job

        job = await enqueue_backfill_job(integration.id)
        return SyncStatusOut(status="queued", job_id=job.get("job_id"))

    if state.sync_supervisor.is_running(backfill_task_name(integration.id)):
        return SyncStatusOut(status="already_running")

    schedule_backfill(state.sync_supervisor, integration.id)
    return SyncStatusOut(status="started")


@router.post(
    "",
    response_model=IntegrationConnectResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("auth"))],
)
async def connect_integration(org_id: UUID, payload: IntegrationConnect, db: Session = Depends(get_db)):
    await run_in_threadpool(get_organization_or_404, db, org_id)

    try:
        integration = await run_in_threadpool(
            connect,
            db,
            org_id,
            payload.platform,
            payload.credentials,
            platform_account_id=payload.platform_account_id,
        )
    except CredentialError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_user_message())

    sync = await start_sync(integration)
    logger.info(f"[INTEGRATIONS] {integration.platform.value} connected for {org_id}, sync {sync.status}")
    return IntegrationConnectResponse(integration=IntegrationOut.model_validate(integration), sync=sync)


@router.get("", response_model=List[IntegrationOut], dependencies=[Depends(rate_limit("api"))])
def list_integrations(org_id: UUID, db: Session = Depends(get_db)):
    get_organization_or_404(db, org_id)
    stmt = (
        select(Integration)
        .where(Integration.organization_id == org_id)
        .order_by(Integration.created_at.asc())
    )
    return db.execute(stmt).scalars().all()


@router.delete(
    "/{integration_id}",
    response_model=IntegrationOut,
    dependencies=[Depends(rate_limit("api"))],
)
def disconnect_integration(org_id: UUID, integration_id: UUID, db: Session = Depends(get_db)):
    """Soft disconnect: history stays, webhooks and aggregation stop using it."""
    try:
        return disconnect(db, org_id, integration_id)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_user_message())


@router.post(
    "/{integration_id}/sync",
    response_model=SyncStatusOut,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limit("api"))],
)
async def sync_integration(org_id: UUID, integration_id: UUID, db: Session = Depends(get_db)):
    try:
        integration = await run_in_threadpool(get_integration, db, org_id, integration_id)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_user_message())

    if integration.status == IntegrationStatusEnum.disconnected:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Integration is disconnected")

    return await start_sync(integration)
