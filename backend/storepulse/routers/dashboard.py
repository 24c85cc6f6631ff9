"""
Dashboard & Aggregation Router
==============================

WHAT: Period-over-period metrics for an organization
WHY: Dashboard cards and ad-hoc comparisons share one aggregation engine

ENDPOINTS:
1. POST /organizations/{org_id}/metrics/aggregate  - explicit windows
2. GET  /organizations/{org_id}/dashboard?days=30  - last N days vs the N before

An organization without integrations (or without observations yet) gets
zeros with state "no_data", never an error.

REFERENCES:
- storepulse/services/aggregation.py
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from storepulse.database import get_db
from storepulse.deps import get_organization_or_404
from storepulse.models import Integration
from storepulse.schemas import AggregateRequest, AggregateResponse, DashboardResponse
from storepulse.services.aggregation import AggregationEngine, TimeWindow
from storepulse.services.integration_service import connected_integration_ids
from storepulse.services.metric_store import SqlMetricStore
from storepulse.services.rate_limiter import rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/organizations/{org_id}",
    tags=["Dashboard"],
    dependencies=[Depends(rate_limit("api"))],
)

NO_INTEGRATIONS_MESSAGE = "Connect your first integration to see real data"
NO_DATA_MESSAGE = "No data yet for this period"


@router.post("/metrics/aggregate", response_model=AggregateResponse)
def aggregate_metrics(org_id: UUID, payload: AggregateRequest, db: Session = Depends(get_db)):
    """Aggregate metrics over an explicit window (and optional comparison window)."""
    get_organization_or_404(db, org_id)

    if payload.integration_ids is None:
        integration_ids = connected_integration_ids(db, org_id)
    else:
        requested = set(payload.integration_ids)
        owned = set(
            db.execute(
                select(Integration.id).where(
                    Integration.organization_id == org_id,
                    Integration.id.in_(requested),
                )
            ).scalars().all()
        ) if requested else set()
        if owned != requested:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Integration not found")
        integration_ids = list(owned)

    current = TimeWindow(payload.current_start, payload.current_end)
    previous = (
        TimeWindow(payload.previous_start, payload.previous_end)
        if payload.previous_start is not None
        else None
    )

    result = AggregationEngine(SqlMetricStore(db)).aggregate(integration_ids, current, previous)
    return result.to_dict()


@router.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(
    org_id: UUID,
    days: int = Query(default=30, ge=1, le=365, description="Length of the current window in days"),
    db: Session = Depends(get_db),
):
    get_organization_or_404(db, org_id)

    integration_ids = connected_integration_ids(db, org_id)
    result = AggregationEngine(SqlMetricStore(db)).aggregate(integration_ids, TimeWindow.last_n_days(days))

    if result.has_data:
        state, message = "ok", None
    elif not integration_ids:
        state, message = "no_data", NO_INTEGRATIONS_MESSAGE
    else:
        state, message = "no_data", NO_DATA_MESSAGE

    return {**result.to_dict(), "state": state, "message": message, "days": days}
