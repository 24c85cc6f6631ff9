"""Webhook payload -> DataPoint extraction.

WHAT:
    Pure mapping from a verified, platform-specific payload to zero or more
    normalized metric observations (DataPointDraft).

WHY:
    - Every platform describes an order/payment differently; aggregation only
      understands (metric_type, value, timestamp)
    - Keeping extraction pure (no DB, no clock) lets webhook ingestion and the
      historical backfill share the exact same mapping

RULES:
    - Total: unknown topics return [] (never raise)
    - Timestamps are business time (order created_at / Stripe created), UTC;
      Stripe refunds and disputes are dated at the event, not the charge
    - Revenue-like drafts always carry `currency` in metadata
    - Count-like values are never negative; unparseable money skips the draft

MAPPINGS:
    shopify orders/create, orders/paid -> revenue (total_price) + orders (1)
    shopify customers/create           -> customers (1)
    shopify refunds/create             -> refunds (sum of refund transactions)
    stripe payment_intent.succeeded    -> revenue (amount / 100)
    stripe payment_intent.payment_failed -> payment_failed (amount / 100)
    stripe charge.refunded             -> refunds (amount_refunded / 100)
    stripe charge.dispute.created      -> disputes (amount / 100)
    stripe customer.created            -> customers (1)
    stripe customer.subscription.created -> subscriptions_started (1)
    stripe customer.subscription.deleted -> subscriptions_cancelled (1)
    stripe invoice.paid                -> invoice_paid (amount_paid / 100)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from storepulse.models import PlatformEnum

logger = logging.getLogger(__name__)

# Stripe amounts are integers in the currency's minor unit
MINOR_UNITS_PER_MAJOR = Decimal(100)


@dataclass
class DataPointDraft:
    """A metric observation not yet bound to a persisted row."""

    metric_type: str
    value: Decimal
    date_recorded: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# PARSING HELPERS
# =============================================================================

def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse money strings/numbers ("100.00", 4999) into Decimal; None if invalid."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def minor_to_major(amount: Any) -> Optional[Decimal]:
    parsed = to_decimal(amount)
    if parsed is None:
        return None
    return parsed / MINOR_UNITS_PER_MAJOR


def parse_timestamp(value: Any, fallback: datetime) -> datetime:
    """Parse an ISO-8601 string or unix seconds into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        # json.loads accepts NaN/Infinity and arbitrarily large numbers
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning(f"[EXTRACT] Unusable unix timestamp {value!r}, using receive time")
            return fallback
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return fallback
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return fallback


def _currency(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value.upper()
    return None


def _money_draft(
    metric_type: str,
    amount: Optional[Decimal],
    currency: Optional[str],
    when: datetime,
    metadata: Dict[str, Any],
) -> List[DataPointDraft]:
    """Build a currency draft, skipping it when amount or currency is unusable."""
    if amount is None or currency is None:
        logger.warning(
            f"[EXTRACT] Skipping {metric_type}: amount={amount!r} currency={currency!r}"
        )
        return []
    if amount < 0:
        logger.warning(f"[EXTRACT] Skipping negative {metric_type} amount {amount}")
        return []
    return [DataPointDraft(metric_type, amount, when, {**metadata, "currency": currency})]


def _count_draft(metric_type: str, when: datetime, metadata: Dict[str, Any]) -> DataPointDraft:
    return DataPointDraft(metric_type, Decimal(1), when, metadata)


# =============================================================================
# SHOPIFY
# =============================================================================

def extract_shopify_order(payload: Dict[str, Any], received_at: datetime, source: str = "webhook") -> List[DataPointDraft]:
    """One order -> revenue (order total) + orders (1), both at order creation time."""
    when = parse_timestamp(payload.get("created_at"), received_at)
    base = {"order_id": str(payload.get("id")), "source": source}
    if payload.get("order_number") is not None:
        base["order_number"] = payload.get("order_number")

    drafts = _money_draft(
        "revenue",
        to_decimal(payload.get("total_price")),
        _currency(payload.get("currency")),
        when,
        base,
    )
    drafts.append(
        _count_draft("orders", when, {**base, "financial_status": payload.get("financial_status")})
    )
    return drafts


def _shopify_customer(payload: Dict[str, Any], received_at: datetime) -> List[DataPointDraft]:
    when = parse_timestamp(payload.get("created_at"), received_at)
    return [_count_draft("customers", when, {"customer_id": str(payload.get("id")), "source": "webhook"})]


def _shopify_refund(payload: Dict[str, Any], received_at: datetime) -> List[DataPointDraft]:
    when = parse_timestamp(payload.get("created_at"), received_at)
    total = Decimal(0)
    currency = None
    transactions = payload.get("transactions")
    if not isinstance(transactions, list):
        transactions = []
    for transaction in transactions:
        if not isinstance(transaction, dict):
            continue
        if transaction.get("kind") != "refund" or transaction.get("status", "success") != "success":
            continue
        amount = to_decimal(transaction.get("amount"))
        if amount is None:
            continue
        total += amount
        currency = currency or _currency(transaction.get("currency"))

    if total == 0:
        return []
    return _money_draft(
        "refunds",
        total,
        currency,
        when,
        {"refund_id": str(payload.get("id")), "order_id": str(payload.get("order_id")), "source": "webhook"},
    )


# =============================================================================
# STRIPE
# =============================================================================

def _stripe_object(event: Dict[str, Any]) -> Dict[str, Any]:
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    return obj if isinstance(obj, dict) else {}


def _stripe_when(event: Dict[str, Any], received_at: datetime, at_event: bool = False) -> datetime:
    """Business time of the object, or of the event itself when `at_event`.

    A refund or dispute happens when the event fires, not when the charge it
    points at was created.
    """
    if at_event:
        return parse_timestamp(event.get("created"), received_at)
    obj = _stripe_object(event)
    return parse_timestamp(obj.get("created", event.get("created")), received_at)


def _stripe_amount(metric_type: str, amount_field: str, id_key: str, at_event: bool = False):
    def extract(event: Dict[str, Any], received_at: datetime) -> List[DataPointDraft]:
        obj = _stripe_object(event)
        return _money_draft(
            metric_type,
            minor_to_major(obj.get(amount_field)),
            _currency(obj.get("currency")),
            _stripe_when(event, received_at, at_event),
            {id_key: obj.get("id"), "customer_id": obj.get("customer"), "source": "webhook"},
        )
    return extract


def _stripe_count(metric_type: str, id_key: str):
    def extract(event: Dict[str, Any], received_at: datetime) -> List[DataPointDraft]:
        obj = _stripe_object(event)
        return [
            _count_draft(
                metric_type,
                _stripe_when(event, received_at),
                {id_key: obj.get("id"), "source": "webhook"},
            )
        ]
    return extract


def extract_stripe_charge(charge: Dict[str, Any], received_at: datetime, source: str) -> List[DataPointDraft]:
    """Succeeded charge -> revenue; used by the Stripe backfill."""
    if charge.get("status") != "succeeded":
        return []
    return _money_draft(
        "revenue",
        minor_to_major(charge.get("amount")),
        _currency(charge.get("currency")),
        parse_timestamp(charge.get("created"), received_at),
        {
            "charge_id": charge.get("id"),
            "payment_intent_id": charge.get("payment_intent"),
            "customer_id": charge.get("customer"),
            "source": source,
        },
    )


def extract_customer(customer: Dict[str, Any], received_at: datetime, source: str) -> List[DataPointDraft]:
    """Customer record -> customers (1); shared by both platform backfills."""
    return [
        _count_draft(
            "customers",
            parse_timestamp(customer.get("created_at", customer.get("created")), received_at),
            {"customer_id": str(customer.get("id")), "source": source},
        )
    ]


# =============================================================================
# DISPATCH TABLE
# =============================================================================

Extractor = Callable[[Dict[str, Any], datetime], List[DataPointDraft]]

EXTRACTORS: Dict[Tuple[PlatformEnum, str], Extractor] = {
    (PlatformEnum.shopify, "orders/create"): extract_shopify_order,
    (PlatformEnum.shopify, "orders/paid"): extract_shopify_order,
    (PlatformEnum.shopify, "customers/create"): _shopify_customer,
    (PlatformEnum.shopify, "refunds/create"): _shopify_refund,
    (PlatformEnum.stripe, "payment_intent.succeeded"): _stripe_amount("revenue", "amount", "payment_intent_id"),
    (PlatformEnum.stripe, "payment_intent.payment_failed"): _stripe_amount("payment_failed", "amount", "payment_intent_id"),
    (PlatformEnum.stripe, "charge.refunded"): _stripe_amount("refunds", "amount_refunded", "charge_id", at_event=True),
    (PlatformEnum.stripe, "charge.dispute.created"): _stripe_amount("disputes", "amount", "dispute_id", at_event=True),
    (PlatformEnum.stripe, "invoice.paid"): _stripe_amount("invoice_paid", "amount_paid", "invoice_id"),
    (PlatformEnum.stripe, "customer.created"): _stripe_count("customers", "customer_id"),
    (PlatformEnum.stripe, "customer.subscription.created"): _stripe_count("subscriptions_started", "subscription_id"),
    (PlatformEnum.stripe, "customer.subscription.deleted"): _stripe_count("subscriptions_cancelled", "subscription_id"),
}


def extract_metrics(
    platform: PlatformEnum,
    topic: str,
    payload: Dict[str, Any],
    received_at: Optional[datetime] = None,
) -> List[DataPointDraft]:
    """Map one payload to metric drafts. Unknown (platform, topic) -> []."""
    extractor = EXTRACTORS.get((platform, topic))
    if extractor is None:
        logger.info(f"[EXTRACT] No metric mapping for {platform.value} {topic}")
        return []
    return extractor(payload, received_at or datetime.now(timezone.utc))
