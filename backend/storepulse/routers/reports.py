"""
Reports & Insights Router
=========================

WHAT: Generate, list, mark read and delete reports and insights
WHY: Periodic reports and the insight feed are the narrative side of the
     dashboard ("revenue is up 18%, here is what to do next")

ENDPOINTS:
    POST   /organizations/{org_id}/reports              generate (weekly | monthly | custom)
    GET    /organizations/{org_id}/reports
    PATCH  /organizations/{org_id}/reports/{id}         is_read
    DELETE /organizations/{org_id}/reports/{id}         admin key
    POST   /organizations/{org_id}/insights/generate
    GET    /organizations/{org_id}/insights
    PATCH  /organizations/{org_id}/insights/{id}        is_read
    DELETE /organizations/{org_id}/insights/{id}        admin key

Generation endpoints use the `insights` rate limiter (expensive queries).
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from storepulse.database import get_db
from storepulse.deps import get_organization_or_404, require_admin
from storepulse.models import Insight, Report
from storepulse.schemas import InsightOut, ReadStatusUpdate, ReportCreate, ReportOut
from storepulse.services.rate_limiter import rate_limit
from storepulse.services.report_generator import ReportGenerator, generate_insights

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/organizations/{org_id}", tags=["Reports"])


def _get_owned(db: Session, model, org_id: UUID, item_id: UUID, label: str):
    item = db.get(model, item_id)
    if item is None or item.organization_id != org_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return item


# =============================================================================
# REPORTS
# =============================================================================

@router.post(
    "/reports",
    response_model=ReportOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("insights"))],
)
def create_report(org_id: UUID, payload: ReportCreate, db: Session = Depends(get_db)):
    get_organization_or_404(db, org_id)
    generator = ReportGenerator(db)

    if payload.type == "weekly":
        report = generator.generate_weekly(org_id)
    elif payload.type == "monthly":
        report = generator.generate_monthly(org_id)
    else:
        report = generator.generate_custom(org_id, payload.start_date, payload.end_date)
    return report


@router.get("/reports", response_model=List[ReportOut], dependencies=[Depends(rate_limit("api"))])
def list_reports(
    org_id: UUID,
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    get_organization_or_404(db, org_id)
    stmt = (
        select(Report)
        .where(Report.organization_id == org_id)
        .order_by(Report.created_at.desc())
        .limit(limit)
    )
    return db.execute(stmt).scalars().all()


@router.patch("/reports/{report_id}", response_model=ReportOut, dependencies=[Depends(rate_limit("api"))])
def update_report(org_id: UUID, report_id: UUID, payload: ReadStatusUpdate, db: Session = Depends(get_db)):
    report = _get_owned(db, Report, org_id, report_id, "Report")
    report.is_read = payload.is_read
    db.commit()
    db.refresh(report)
    return report


@router.delete(
    "/reports/{report_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
def delete_report(org_id: UUID, report_id: UUID, db: Session = Depends(get_db)):
    report = _get_owned(db, Report, org_id, report_id, "Report")
    db.delete(report)
    db.commit()
    logger.info(f"[REPORTS] Deleted report {report_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# INSIGHTS
# =============================================================================

@router.post(
    "/insights/generate",
    response_model=List[InsightOut],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("insights"))],
)
def create_insights(org_id: UUID, db: Session = Depends(get_db)):
    get_organization_or_404(db, org_id)
    return generate_insights(db, org_id)


@router.get("/insights", response_model=List[InsightOut], dependencies=[Depends(rate_limit("api"))])
def list_insights(
    org_id: UUID,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    get_organization_or_404(db, org_id)
    stmt = select(Insight).where(Insight.organization_id == org_id)
    if unread_only:
        stmt = stmt.where(Insight.is_read.is_(False))
    stmt = stmt.order_by(Insight.impact_score.desc(), Insight.created_at.desc()).limit(limit)
    return db.execute(stmt).scalars().all()


@router.patch("/insights/{insight_id}", response_model=InsightOut, dependencies=[Depends(rate_limit("api"))])
def update_insight(org_id: UUID, insight_id: UUID, payload: ReadStatusUpdate, db: Session = Depends(get_db)):
    insight = _get_owned(db, Insight, org_id, insight_id, "Insight")
    insight.is_read = payload.is_read
    db.commit()
    db.refresh(insight)
    return insight


@router.delete(
    "/insights/{insight_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
def delete_insight(org_id: UUID, insight_id: UUID, db: Session = Depends(get_db)):
    insight = _get_owned(db, Insight, org_id, insight_id, "Insight")
    db.delete(insight)
    db.commit()
    logger.info(f"[INSIGHTS] Deleted insight {insight_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
