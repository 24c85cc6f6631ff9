"""Performance score, recommendations and rule-based insights.

WHAT:
    Deterministic rules that turn an aggregation into:
    1. A bounded 0-100 performance score
    2. Actionable recommendations for reports
    3. Insight drafts for the insights feed

WHY:
    Merchants want one number and a short to-do list, not a table. The rules
    are plain thresholds so every score can be explained line by line.

SCORE (base 50, rounded, clamped to [0, 100]):
    revenue change  > 20: +25 | > 10: +15 | > 0: +10 | < -20: -25 | < -10: -15 | < 0: -10
    orders change   > 15: +15 | > 5: +10  | > 0: +5  | < -15: -15 | < -5: -10  | < 0: -5
    conversion rate > 5:  +10 | > 3: +5   | < 1: -10
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from storepulse.services.aggregation import AggregationResult

URGENCY_WEIGHT = {"high": 3, "medium": 2, "low": 1}
MAX_INSIGHTS = 10

# Insight thresholds
REVENUE_TREND_MIN_CHANGE = 10.0
LOW_CONVERSION_RATE = 1.0
HIGH_CONVERSION_RATE = 5.0

# Recommendation thresholds
CONVERSION_TARGET = 2.0
AOV_TARGET = 50.0
SESSIONS_TARGET = 1000


@dataclass
class SummaryMetrics:
    total_revenue: float = 0.0
    total_orders: float = 0.0
    total_customers: float = 0.0
    total_sessions: float = 0.0
    average_order_value: float = 0.0
    conversion_rate: float = 0.0
    revenue_change: float = 0.0
    orders_change: float = 0.0

    @classmethod
    def from_aggregation(cls, result: AggregationResult) -> "SummaryMetrics":
        metrics = result.metrics
        return cls(
            total_revenue=metrics["revenue"].current,
            total_orders=metrics["orders"].current,
            total_customers=metrics["customers"].current,
            total_sessions=metrics["sessions"].current,
            average_order_value=metrics["average_order_value"].current,
            conversion_rate=metrics["conversion_rate"].current,
            revenue_change=metrics["revenue"].change_percent,
            orders_change=metrics["orders"].change_percent,
        )


@dataclass
class Recommendation:
    category: str
    title: str
    description: str
    priority: str
    actionable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InsightDraft:
    type: str
    category: str
    title: str
    description: str
    impact_score: float
    urgency: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def priority(self) -> float:
        return self.impact_score * URGENCY_WEIGHT[self.urgency]


# =============================================================================
# SCORE
# =============================================================================

def _revenue_points(change: float) -> int:
    if change > 20:
        return 25
    if change > 10:
        return 15
    if change > 0:
        return 10
    if change < -20:
        return -25
    if change < -10:
        return -15
    if change < 0:
        return -10
    return 0


def _orders_points(change: float) -> int:
    if change > 15:
        return 15
    if change > 5:
        return 10
    if change > 0:
        return 5
    if change < -15:
        return -15
    if change < -5:
        return -10
    if change < 0:
        return -5
    return 0


def _conversion_points(rate: float) -> int:
    if rate > 5:
        return 10
    if rate > 3:
        return 5
    if rate < 1:
        return -10
    return 0


def calculate_performance_score(summary: SummaryMetrics) -> int:
    score = (
        50
        + _revenue_points(summary.revenue_change)
        + _orders_points(summary.orders_change)
        + _conversion_points(summary.conversion_rate)
    )
    return max(0, min(100, round(score)))


# =============================================================================
# RECOMMENDATIONS
# =============================================================================

MONITORING_RECOMMENDATION = Recommendation(
    category="general",
    title="Continue monitoring performance",
    description="Keep tracking your key metrics and look for patterns in your business data.",
    priority="low",
    actionable=False,
)

SETUP_RECOMMENDATION = Recommendation(
    category="setup",
    title="Connect your first integration",
    description="Add Shopify, Stripe, or Google Analytics to start generating detailed business reports.",
    priority="high",
)


def build_recommendations(summary: SummaryMetrics, has_integrations: bool = True) -> List[Recommendation]:
    """Independent threshold rules; falls back to the monitoring entry."""
    if not has_integrations:
        return [MONITORING_RECOMMENDATION, SETUP_RECOMMENDATION]

    recommendations: List[Recommendation] = []

    if summary.total_sessions > 0 and summary.conversion_rate < CONVERSION_TARGET:
        recommendations.append(Recommendation(
            category="conversion",
            title="Improve conversion rate",
            description=(
                f"Your conversion rate is {summary.conversion_rate:.2f}%. Consider optimizing your "
                "checkout process, product pages, and pricing strategy."
            ),
            priority="high",
        ))

    if summary.total_orders > 0 and summary.average_order_value < AOV_TARGET:
        recommendations.append(Recommendation(
            category="revenue",
            title="Increase average order value",
            description=(
                f"Your average order value is {summary.average_order_value:.2f}. Consider implementing "
                "upselling, cross-selling, or bundling strategies."
            ),
            priority="medium",
        ))

    if summary.total_sessions < SESSIONS_TARGET:
        recommendations.append(Recommendation(
            category="traffic",
            title="Increase website traffic",
            description=(
                "Your traffic volume is relatively low. Consider investing in SEO, content marketing, "
                "or paid advertising to drive more visitors."
            ),
            priority="medium",
        ))

    return recommendations or [MONITORING_RECOMMENDATION]


# =============================================================================
# INSIGHTS
# =============================================================================

def onboarding_insights() -> List[InsightDraft]:
    return [
        InsightDraft(
            type="recommendation",
            category="growth",
            title="Connect your first data source",
            description=(
                "Start by connecting Shopify, Stripe, or Google Analytics to begin receiving insights "
                "about your business performance."
            ),
            impact_score=10,
            urgency="high",
            metadata={"onboarding": True},
        ),
        InsightDraft(
            type="opportunity",
            category="growth",
            title="Unlock business intelligence",
            description=(
                "Once connected, you'll receive insights about revenue trends, customer behavior, "
                "conversion optimization, and growth opportunities."
            ),
            impact_score=9,
            urgency="medium",
            metadata={"onboarding": True},
        ),
    ]


def _revenue_trend_insight(result: AggregationResult) -> List[InsightDraft]:
    revenue = result.metrics["revenue"]
    # A jump from nothing is "first sales", not a trend
    if revenue.previous <= 0:
        return []
    change = revenue.change_percent
    if abs(change) < REVENUE_TREND_MIN_CHANGE:
        return []

    growing = change > 0
    magnitude = abs(change)
    return [InsightDraft(
        type="trend",
        category="revenue",
        title=f"Revenue {'growth' if growing else 'decline'} detected",
        description=(
            f"Your revenue has {'increased' if growing else 'decreased'} by {magnitude:.1f}% "
            "compared to the previous period."
        ),
        impact_score=min(magnitude / 2, 10),
        urgency="high" if magnitude > 25 else "medium" if magnitude > 15 else "low",
        metadata={
            "change": change,
            "current_total": revenue.current,
            "previous_total": revenue.previous,
        },
    )]


def _conversion_insight(result: AggregationResult) -> List[InsightDraft]:
    sessions = result.metrics["sessions"].current
    if sessions <= 0:
        return []

    rate = result.metrics["conversion_rate"].current
    orders = result.metrics["orders"].current
    metadata = {"conversion_rate": rate, "sessions": sessions, "orders": orders}

    if rate < LOW_CONVERSION_RATE:
        return [InsightDraft(
            type="recommendation",
            category="performance",
            title="Low conversion rate detected",
            description=(
                f"Your conversion rate is {rate:.2f}%, which is below industry average. Consider "
                "optimizing your checkout process, product pages, or pricing strategy."
            ),
            impact_score=9,
            urgency="high",
            metadata=metadata,
        )]
    if rate > HIGH_CONVERSION_RATE:
        return [InsightDraft(
            type="opportunity",
            category="performance",
            title="Excellent conversion rate",
            description=(
                f"Your conversion rate of {rate:.2f}% is above industry average. Consider increasing "
                "traffic to capitalize on this high-converting experience."
            ),
            impact_score=8,
            urgency="medium",
            metadata=metadata,
        )]
    return []


def build_insights(result: AggregationResult, has_integrations: bool = True) -> List[InsightDraft]:
    """Deterministic insights, most important first, at most MAX_INSIGHTS."""
    if not has_integrations:
        return onboarding_insights()

    drafts = _revenue_trend_insight(result) + _conversion_insight(result)
    drafts.sort(key=lambda draft: draft.priority, reverse=True)
    return drafts[:MAX_INSIGHTS]
