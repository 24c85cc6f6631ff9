"""Per-platform webhook strategies.

WHAT:
    Everything that differs between webhook sources, behind one interface:
    which header carries the signature, where the topic and event id live,
    which fields a payload must have, and how it maps to metrics.

WHY:
    The ingestion pipeline (rate limit -> verify -> parse -> dedupe -> log ->
    extract -> persist) is identical for every platform. Keeping the
    differences in a strategy table means the pipeline has no
    `if platform == ...` branches.

ADDING A PLATFORM:
    Subclass WebhookPlatform, implement the hooks, register it in PLATFORMS.

RELATED FILES:
    - storepulse/services/webhook_ingestion.py: the pipeline
    - storepulse/services/webhook_signatures.py: signature schemes
    - storepulse/services/metric_extractor.py: payload -> DataPointDraft
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from storepulse.deps import Settings
from storepulse.models import PlatformEnum
from storepulse.services.metric_extractor import DataPointDraft, extract_metrics
from storepulse.services.webhook_signatures import (
    VerificationResult,
    verify_shopify_hmac,
    verify_stripe_signature,
)


class PayloadError(ValueError):
    """Body is not usable JSON (raised by `parse`)."""


class WebhookPlatform(ABC):
    """Strategy for one webhook source.

    Header mappings passed to these hooks are lower-cased.
    """

    platform: PlatformEnum
    # Topics that change the integration itself instead of emitting metrics
    lifecycle_topics: FrozenSet[str] = frozenset()

    @abstractmethod
    def secret(self, settings: Settings) -> Optional[str]:
        """Signing secret for this platform."""

    @abstractmethod
    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        secret: Optional[str],
        tolerance: int,
        now: Optional[float] = None,
    ) -> VerificationResult:
        ...

    @abstractmethod
    def parse(self, raw_body: bytes, verification: VerificationResult) -> Dict[str, Any]:
        """Decode the verified body. Raises PayloadError on bad JSON."""

    @abstractmethod
    def topic(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        ...

    @abstractmethod
    def external_id(self, headers: Mapping[str, str], payload: Dict[str, Any]) -> Optional[str]:
        """Platform identifier used as the idempotency key (with topic)."""

    @abstractmethod
    def validate(self, topic: str, payload: Dict[str, Any]) -> List[str]:
        """Return a list of problems; empty means the payload is usable."""

    def extract(self, topic: str, payload: Dict[str, Any], received_at: datetime) -> List[DataPointDraft]:
        return extract_metrics(self.platform, topic, payload, received_at)


def _load_json_object(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise PayloadError(f"Invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise PayloadError("Payload must be a JSON object")
    return payload


def _missing(payload: Dict[str, Any], fields: List[str]) -> List[str]:
    return [f"missing field '{name}'" for name in fields if payload.get(name) in (None, "")]


# =============================================================================
# SHOPIFY
# =============================================================================

class ShopifyWebhooks(WebhookPlatform):
    """
    Headers:
        X-Shopify-Topic        orders/create, orders/paid, customers/create ...
        X-Shopify-Hmac-SHA256  base64 HMAC of the raw body
        X-Shopify-Shop-Domain  my-store.myshopify.com
        X-Shopify-Event-Id     stable across retries of one event
    """

    platform = PlatformEnum.shopify
    lifecycle_topics = frozenset({"app/uninstalled", "shop/redact"})

    REQUIRED_FIELDS = {
        "orders/create": ["id", "total_price"],
        "orders/paid": ["id", "total_price"],
        "customers/create": ["id"],
        "refunds/create": ["id"],
    }

    def secret(self, settings: Settings) -> Optional[str]:
        return settings.SHOPIFY_WEBHOOK_SECRET

    def verify(self, raw_body, headers, secret, tolerance, now=None):
        return verify_shopify_hmac(raw_body, headers.get("x-shopify-hmac-sha256"), secret)

    def parse(self, raw_body, verification):
        return _load_json_object(raw_body)

    def topic(self, headers, payload):
        return headers.get("x-shopify-topic") or None

    def external_id(self, headers, payload):
        if payload.get("id") is not None:
            return str(payload["id"])
        # shop/redact and app/uninstalled carry shop_id instead of id
        return headers.get("x-shopify-event-id") or (
            str(payload["shop_id"]) if payload.get("shop_id") is not None else None
        )

    def validate(self, topic, payload):
        return _missing(payload, self.REQUIRED_FIELDS.get(topic, []))


# =============================================================================
# STRIPE
# =============================================================================

class StripeWebhooks(WebhookPlatform):
    """
    Headers:
        Stripe-Signature  t=<unix>,v1=<hex>

    The event envelope carries the topic (`type`) and the idempotency key (`id`).
    """

    platform = PlatformEnum.stripe

    def secret(self, settings: Settings) -> Optional[str]:
        return settings.STRIPE_WEBHOOK_SECRET

    def verify(self, raw_body, headers, secret, tolerance, now=None):
        return verify_stripe_signature(
            raw_body, headers.get("stripe-signature"), secret, tolerance=tolerance, now=now
        )

    def parse(self, raw_body, verification):
        if verification.event is not None:
            return verification.event
        return _load_json_object(raw_body)

    def topic(self, headers, payload):
        value = payload.get("type")
        return value if isinstance(value, str) and value else None

    def external_id(self, headers, payload):
        value = payload.get("id")
        return str(value) if value is not None else None

    def validate(self, topic, payload):
        problems = _missing(payload, ["id", "type"])
        data = payload.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            problems.append("missing field 'data.object'")
        return problems


PLATFORMS: Dict[PlatformEnum, WebhookPlatform] = {
    PlatformEnum.shopify: ShopifyWebhooks(),
    PlatformEnum.stripe: StripeWebhooks(),
}


def get_platform(platform: PlatformEnum) -> WebhookPlatform:
    """Return the strategy for `platform`. Raises KeyError for platforms without webhooks."""
    return PLATFORMS[platform]
