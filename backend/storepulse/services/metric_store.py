"""SQL persistence for DataPoints.

WHAT:
    Append-only writes and range sums over the data_points table.

WHY:
    Aggregation, reports and ingestion all need the same two operations
    (append observations, sum them per metric over a window). Keeping the
    queries here keeps the engines free of SQL and easy to test.

RULES:
    - Windows are half-open: start <= date_recorded < end
    - Writes only `add` to the session; the caller owns the transaction
    - All datetimes are UTC (SQLite returns naive values, normalized here)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from storepulse.models import DataPoint
from storepulse.services.metric_extractor import DataPointDraft

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values read back from SQLite; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlMetricStore:
    def __init__(self, db: Session):
        self.db = db

    def add_data_points(self, integration_id: UUID, drafts: Iterable[DataPointDraft]) -> List[DataPoint]:
        """Stage DataPoints for `integration_id` in the current transaction."""
        rows = [
            DataPoint(
                integration_id=integration_id,
                metric_type=draft.metric_type,
                value=draft.value,
                meta=draft.metadata,
                date_recorded=as_utc(draft.date_recorded),
            )
            for draft in drafts
        ]
        self.db.add_all(rows)
        return rows

    def sum_by_metric(
        self,
        integration_ids: Sequence[UUID],
        start: datetime,
        end: datetime,
        metric_types: Sequence[str],
    ) -> Dict[str, Decimal]:
        """One grouped range-sum query.

        Returns:
            {metric_type: total}; metrics without observations are absent
        """
        if not integration_ids or not metric_types:
            return {}

        stmt = (
            select(DataPoint.metric_type, func.sum(DataPoint.value))
            .where(
                DataPoint.integration_id.in_(list(integration_ids)),
                DataPoint.metric_type.in_(list(metric_types)),
                DataPoint.date_recorded >= as_utc(start),
                DataPoint.date_recorded < as_utc(end),
            )
            .group_by(DataPoint.metric_type)
        )
        totals = {
            metric_type: Decimal(str(total))
            for metric_type, total in self.db.execute(stmt).all()
            if total is not None
        }
        logger.debug(f"[METRIC_STORE] Sums {start.isoformat()}..{end.isoformat()}: {totals}")
        return totals

    def daily_series(
        self,
        integration_ids: Sequence[UUID],
        start: datetime,
        end: datetime,
        metric_types: Sequence[str],
    ) -> Dict[str, Dict[date, Decimal]]:
        """Per-UTC-day totals for chart rendering.

        Bucketed in Python so the same code runs on SQLite and Postgres.
        """
        series: Dict[str, Dict[date, Decimal]] = {name: defaultdict(Decimal) for name in metric_types}
        if not integration_ids or not metric_types:
            return {name: {} for name in metric_types}

        stmt = select(DataPoint.metric_type, DataPoint.value, DataPoint.date_recorded).where(
            DataPoint.integration_id.in_(list(integration_ids)),
            DataPoint.metric_type.in_(list(metric_types)),
            DataPoint.date_recorded >= as_utc(start),
            DataPoint.date_recorded < as_utc(end),
        )
        for metric_type, value, recorded in self.db.execute(stmt).all():
            series[metric_type][as_utc(recorded).date()] += Decimal(str(value))

        return {name: dict(sorted(days.items())) for name, days in series.items()}
