"""Periodic business reports and the insights feed.

WHAT:
    ReportGenerator builds a stored Report for an organization:
    - summary (totals, AOV, conversion rate, revenue/orders change, score)
    - per-day series for charts
    - top stored insights
    - recommendations
    generate_insights() evaluates the insight rules over the last 30 days and
    stores the resulting Insight rows.

PERIODS:
    weekly  -> last 7 days
    monthly -> month to date (UTC)
    custom  -> explicit range; type by span (<= 1 day daily, <= 7 weekly, else monthly)

EMPTY ORGANIZATIONS:
    No connected integrations -> zeroed summary, score 0, empty series and the
    default monitoring + "Connect your first integration" recommendations.

RELATED FILES:
    - storepulse/services/aggregation.py: numbers
    - storepulse/services/report_scorer.py: score, recommendations, insight rules
    - storepulse/routers/reports.py: HTTP surface
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from storepulse.exceptions import OrganizationNotFoundError
from storepulse.models import Insight, Organization, Report, ReportTypeEnum
from storepulse.services.aggregation import (
    BASE_METRICS,
    AggregationEngine,
    AggregationResult,
    TimeWindow,
    empty_result,
)
from storepulse.services.integration_service import connected_integration_ids
from storepulse.services.metric_store import SqlMetricStore, as_utc
from storepulse.services.report_scorer import (
    SummaryMetrics,
    build_insights,
    build_recommendations,
    calculate_performance_score,
)

logger = logging.getLogger(__name__)

TOP_INSIGHTS = 5
INSIGHT_LOOKBACK_DAYS = 30


def report_type_for_span(start: datetime, end: datetime) -> ReportTypeEnum:
    days = math.ceil((end - start).total_seconds() / 86400)
    if days <= 1:
        return ReportTypeEnum.daily
    if days <= 7:
        return ReportTypeEnum.weekly
    return ReportTypeEnum.monthly


def _summary_dict(summary: SummaryMetrics, score: int) -> Dict[str, Any]:
    return {
        "total_revenue": round(summary.total_revenue, 2),
        "total_orders": round(summary.total_orders, 2),
        "total_customers": round(summary.total_customers, 2),
        "total_sessions": round(summary.total_sessions, 2),
        "average_order_value": round(summary.average_order_value, 2),
        "conversion_rate": round(summary.conversion_rate, 1),
        "revenue_change": round(summary.revenue_change, 1),
        "orders_change": round(summary.orders_change, 1),
        "performance_score": score,
    }


class ReportGenerator:
    """
    Usage:
        report = ReportGenerator(db).generate_weekly(organization_id)
        report.content["summary"]["performance_score"]
    """

    def __init__(self, db: Session, now: Optional[datetime] = None):
        self.db = db
        self._now = now
        self.engine = AggregationEngine(SqlMetricStore(db))

    def now(self) -> datetime:
        return as_utc(self._now) if self._now else datetime.now(timezone.utc)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def generate_weekly(self, organization_id: UUID) -> Report:
        end = self.now()
        return self.generate(organization_id, end - timedelta(days=7), end, ReportTypeEnum.weekly)

    def generate_monthly(self, organization_id: UUID) -> Report:
        end = self.now()
        start = end.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start >= end:
            # Exactly midnight on the 1st: report the last day instead of an empty range
            start = end - timedelta(days=1)
        return self.generate(organization_id, start, end, ReportTypeEnum.monthly)

    def generate_custom(self, organization_id: UUID, start: datetime, end: datetime) -> Report:
        return self.generate(organization_id, start, end, report_type_for_span(start, end))

    def generate(
        self,
        organization_id: UUID,
        start: datetime,
        end: datetime,
        report_type: ReportTypeEnum,
    ) -> Report:
        organization = self.db.get(Organization, organization_id)
        if organization is None:
            raise OrganizationNotFoundError(f"Organization {organization_id} not found")

        window = TimeWindow(start, end)
        integration_ids = connected_integration_ids(self.db, organization_id)

        if integration_ids:
            content = self._build_content(organization, window, report_type, integration_ids)
        else:
            logger.info(f"[REPORTS] Organization {organization_id} has no integrations, storing empty report")
            content = self._empty_content(organization, window, report_type)

        report = Report(
            organization_id=organization_id,
            report_type=report_type,
            title=f"{report_type.value.title()} Report - {window.start.date().isoformat()}",
            content=content,
            date_range_start=window.start,
            date_range_end=window.end,
        )
        self.db.add(report)
        self.db.commit()
        self.db.refresh(report)
        logger.info(
            f"[REPORTS] Stored {report_type.value} report {report.id} "
            f"(score={content['summary']['performance_score']})"
        )
        return report

    # -------------------------------------------------------------------------
    # Content
    # -------------------------------------------------------------------------

    def _header(self, organization: Organization, window: TimeWindow, report_type: ReportTypeEnum) -> Dict[str, Any]:
        return {
            "organization": {"id": str(organization.id), "name": organization.name},
            "period": {**window.to_dict(), "type": report_type.value},
            "generated_at": self.now().isoformat(),
        }

    def _build_content(
        self,
        organization: Organization,
        window: TimeWindow,
        report_type: ReportTypeEnum,
        integration_ids: List[UUID],
    ) -> Dict[str, Any]:
        result = self.engine.aggregate(integration_ids, window)
        summary = SummaryMetrics.from_aggregation(result)
        score = calculate_performance_score(summary)

        series = self.engine.daily_series(integration_ids, window, BASE_METRICS)
        metrics = {
            name: [{"date": day.isoformat(), "value": round(float(value), 2)} for day, value in days.items()]
            for name, days in series.items()
        }

        return {
            **self._header(organization, window, report_type),
            "summary": _summary_dict(summary, score),
            "metrics": metrics,
            "insights": self._top_insights(organization.id),
            "recommendations": [r.to_dict() for r in build_recommendations(summary)],
        }

    def _empty_content(self, organization: Organization, window: TimeWindow, report_type: ReportTypeEnum) -> Dict[str, Any]:
        summary = SummaryMetrics()
        return {
            **self._header(organization, window, report_type),
            "summary": _summary_dict(summary, 0),
            "metrics": {name: [] for name in BASE_METRICS},
            "insights": [],
            "recommendations": [r.to_dict() for r in build_recommendations(summary, has_integrations=False)],
        }

    def _top_insights(self, organization_id: UUID) -> List[Dict[str, Any]]:
        stmt = (
            select(Insight)
            .where(Insight.organization_id == organization_id)
            .order_by(Insight.impact_score.desc())
            .limit(TOP_INSIGHTS)
        )
        return [
            {
                "type": insight.type,
                "title": insight.title,
                "description": insight.description,
                "impact_score": insight.impact_score,
            }
            for insight in self.db.execute(stmt).scalars().all()
        ]


def generate_insights(db: Session, organization_id: UUID, now: Optional[datetime] = None) -> List[Insight]:
    """Evaluate the insight rules over the last 30 days and store the results.

    Raises:
        OrganizationNotFoundError: Unknown organization
    """
    if db.get(Organization, organization_id) is None:
        raise OrganizationNotFoundError(f"Organization {organization_id} not found")

    integration_ids = connected_integration_ids(db, organization_id)
    window = TimeWindow.last_n_days(INSIGHT_LOOKBACK_DAYS, now)
    if integration_ids:
        result: AggregationResult = AggregationEngine(SqlMetricStore(db)).aggregate(integration_ids, window)
    else:
        result = empty_result(window, window.previous())

    drafts = build_insights(result, has_integrations=bool(integration_ids))
    insights = [
        Insight(
            organization_id=organization_id,
            type=draft.type,
            category=draft.category,
            title=draft.title,
            description=draft.description,
            impact_score=draft.impact_score,
            urgency=draft.urgency,
            meta=draft.metadata,
        )
        for draft in drafts
    ]
    db.add_all(insights)
    db.commit()
    logger.info(f"[INSIGHTS] Generated {len(insights)} insights for organization {organization_id}")
    return insights
