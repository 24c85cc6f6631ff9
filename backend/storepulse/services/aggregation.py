"""Period-over-period metric aggregation.

WHAT:
    Sums DataPoints over a current window and a comparison window, derives
    average order value and conversion rate, and classifies each metric's
    trend.

WHY:
    Dashboard cards, the aggregate endpoint, reports and insights all show
    "this period vs the one before". One engine keeps the math (and its
    zero-division rules) identical everywhere.

MATH:
    percent_change(cur, prev):
        prev == 0 -> 100 if cur > 0 else 0
        otherwise -> (cur - prev) / prev * 100
    classify_trend(change): up if > 1, down if < -1, else neutral
    average_order_value = revenue / orders       (0 when orders == 0)
    conversion_rate     = orders / sessions * 100 (0 when sessions == 0)

ROUNDING:
    Only at presentation (`rounded()`, `to_dict()`). Trends are classified on
    full precision so +0.96% never rounds up into "up".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional, Sequence
from uuid import UUID

from storepulse.services.metric_store import SqlMetricStore, as_utc

logger = logging.getLogger(__name__)

BASE_METRICS = ("revenue", "orders", "customers", "sessions")
DERIVED_METRICS = ("average_order_value", "conversion_rate")
ALL_METRICS = BASE_METRICS + DERIVED_METRICS

CURRENCY_METRICS = frozenset({"revenue", "average_order_value"})
PERCENT_METRICS = frozenset({"conversion_rate"})

# Dead-band (in percent) inside which a change counts as flat
TREND_THRESHOLD = 1.0


# =============================================================================
# WINDOWS
# =============================================================================

@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end) in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", as_utc(self.start))
        object.__setattr__(self, "end", as_utc(self.end))
        if self.end <= self.start:
            raise ValueError(f"Window end {self.end.isoformat()} must be after start {self.start.isoformat()}")

    @property
    def length(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> "TimeWindow":
        """The contiguous window of equal length ending where this one starts."""
        return TimeWindow(self.start - self.length, self.start)

    @classmethod
    def last_n_days(cls, days: int, now: Optional[datetime] = None) -> "TimeWindow":
        end = as_utc(now) if now else datetime.now(timezone.utc)
        return cls(end - timedelta(days=days), end)

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


# =============================================================================
# PURE MATH
# =============================================================================

def percent_change(current: float, previous: float) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / previous * 100


def classify_trend(change_percent: float) -> str:
    if change_percent > TREND_THRESHOLD:
        return "up"
    if change_percent < -TREND_THRESHOLD:
        return "down"
    return "neutral"


def safe_ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    if denominator == 0:
        return 0.0
    return numerator / denominator * scale


def _decimals_for(name: str) -> int:
    return 1 if name in PERCENT_METRICS else 2


@dataclass
class AggregatedMetric:
    """One metric compared across two windows (full precision)."""

    current: float
    previous: float
    change: float
    change_percent: float
    trend: str

    @classmethod
    def compare(cls, current: float, previous: float) -> "AggregatedMetric":
        change_percent = percent_change(current, previous)
        return cls(
            current=current,
            previous=previous,
            change=current - previous,
            change_percent=change_percent,
            trend=classify_trend(change_percent),
        )

    @classmethod
    def empty(cls) -> "AggregatedMetric":
        return cls(0.0, 0.0, 0.0, 0.0, "neutral")

    def rounded(self, decimals: int = 2) -> Dict[str, object]:
        return {
            "current": round(self.current, decimals),
            "previous": round(self.previous, decimals),
            "change": round(self.change, decimals),
            "change_percent": round(self.change_percent, 1),
            "trend": self.trend,
        }


@dataclass
class AggregationResult:
    metrics: Dict[str, AggregatedMetric]
    has_data: bool
    current_window: Optional[TimeWindow] = None
    previous_window: Optional[TimeWindow] = None
    totals: Dict[str, Decimal] = field(default_factory=dict)

    def value(self, name: str) -> float:
        return self.metrics[name].current

    def to_dict(self) -> Dict[str, object]:
        return {
            "metrics": {name: metric.rounded(_decimals_for(name)) for name, metric in self.metrics.items()},
            "has_data": self.has_data,
            "window": {
                "current": self.current_window.to_dict() if self.current_window else None,
                "previous": self.previous_window.to_dict() if self.previous_window else None,
            },
        }


def derive_metrics(sums: Dict[str, float]) -> Dict[str, float]:
    """Base sums -> base + derived values for one window."""
    values = {name: float(sums.get(name, 0)) for name in BASE_METRICS}
    values["average_order_value"] = safe_ratio(values["revenue"], values["orders"])
    values["conversion_rate"] = safe_ratio(values["orders"], values["sessions"], scale=100.0)
    return values


def empty_result(current: Optional[TimeWindow] = None, previous: Optional[TimeWindow] = None) -> AggregationResult:
    return AggregationResult(
        metrics={name: AggregatedMetric.empty() for name in ALL_METRICS},
        has_data=False,
        current_window=current,
        previous_window=previous,
    )


# =============================================================================
# ENGINE
# =============================================================================

class AggregationEngine:
    """
    Usage:
        engine = AggregationEngine(SqlMetricStore(db))
        result = engine.aggregate(integration_ids, TimeWindow.last_n_days(30))
        result.metrics["revenue"].trend  # "up"
    """

    def __init__(self, store: SqlMetricStore):
        self.store = store

    def aggregate(
        self,
        integration_ids: Sequence[UUID],
        current: TimeWindow,
        previous: Optional[TimeWindow] = None,
    ) -> AggregationResult:
        previous = previous or current.previous()

        if not integration_ids:
            logger.info("[AGGREGATION] No integrations, returning empty result")
            return empty_result(current, previous)

        current_sums = self.store.sum_by_metric(integration_ids, current.start, current.end, BASE_METRICS)
        previous_sums = self.store.sum_by_metric(integration_ids, previous.start, previous.end, BASE_METRICS)

        if not current_sums and not previous_sums:
            logger.info(f"[AGGREGATION] No observations for {len(integration_ids)} integrations")
            return empty_result(current, previous)

        current_values = derive_metrics(current_sums)
        previous_values = derive_metrics(previous_sums)

        metrics = {
            name: AggregatedMetric.compare(current_values[name], previous_values[name])
            for name in ALL_METRICS
        }
        logger.info(
            f"[AGGREGATION] {len(integration_ids)} integrations: "
            f"revenue {current_values['revenue']:.2f} vs {previous_values['revenue']:.2f}"
        )
        return AggregationResult(
            metrics=metrics,
            has_data=True,
            current_window=current,
            previous_window=previous,
            totals={name: current_sums.get(name, Decimal(0)) for name in BASE_METRICS},
        )

    def daily_series(self, integration_ids: Sequence[UUID], window: TimeWindow, metric_types=BASE_METRICS):
        return self.store.daily_series(integration_ids, window.start, window.end, metric_types)
