"""Platform webhook intake.

WHAT:
    Public endpoints Shopify and Stripe deliver events to. Each delivery is
    handed to WebhookIngestionService, which verifies, dedupes and turns it
    into DataPoints.

WHY:
    Webhooks are how revenue shows up on the dashboard within seconds of an
    order, instead of waiting for the next backfill.

ROUTING:
    The organization is identified by `?org=<uuid>` in the URL registered on
    the platform; the integration is that organization's integration for the
    platform (a live one if any; a disconnected one only acknowledges).

RESPONSES:
    200 accepted / replay / ignored after disconnect,
    400 malformed body or missing fields/headers, 401 signature failure,
    404 no integration, 429 rate limited, 500 persistence failure

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks
    - https://docs.stripe.com/webhooks
    - storepulse/services/webhook_ingestion.py
"""

import logging
from typing import Mapping, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storepulse.database import get_db
from storepulse.models import PlatformEnum
from storepulse.services.webhook_ingestion import WebhookIngestionService, find_webhook_integration

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _deliver(
    platform: PlatformEnum,
    organization_id: UUID,
    raw_body: bytes,
    headers: Mapping[str, str],
    db: Session,
) -> JSONResponse:
    """Lookup + ingestion; blocking DB work, run off the event loop."""
    tag = f"[WEBHOOK:{platform.value.upper()}]"
    integration = find_webhook_integration(db, organization_id, platform)
    if integration is None:
        logger.warning(f"{tag} No {platform.value} integration for organization {organization_id}")
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "Integration not found"},
        )

    result = WebhookIngestionService(db).handle_delivery(platform, integration, raw_body, headers)
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers or None)


async def _handle(platform: PlatformEnum, request: Request, org: Optional[str], db: Session) -> JSONResponse:
    try:
        organization_id = UUID(org) if org else None
    except ValueError:
        organization_id = None
    if organization_id is None:
        logger.warning(f"[WEBHOOK:{platform.value.upper()}] Missing or invalid org parameter: {org!r}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Missing or invalid org parameter"},
        )

    # Signatures are computed over the exact bytes received
    raw_body = await request.body()

    return await run_in_threadpool(_deliver, platform, organization_id, raw_body, request.headers, db)


@router.post("/shopify")
async def shopify_webhook(
    request: Request,
    org: Optional[str] = Query(default=None, description="Organization UUID"),
    db: Session = Depends(get_db),
):
    """Shopify deliveries (X-Shopify-Topic, X-Shopify-Hmac-SHA256, X-Shopify-Shop-Domain)."""
    return await _handle(PlatformEnum.shopify, request, org, db)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    org: Optional[str] = Query(default=None, description="Organization UUID"),
    db: Session = Depends(get_db),
):
    """Stripe deliveries (Stripe-Signature)."""
    return await _handle(PlatformEnum.stripe, request, org, db)
