"""Webhook ingestion pipeline.

WHAT:
    Turns one inbound delivery into DataPoints, exactly once, with an audit
    trail of every attempt.

FLOW (per delivery):
    1. Rate limit (webhook limiter, keyed by integration)   -> 429
    2. Verify signature                                    -> 401 signature_verification_failed
    3. Parse JSON                                          -> 400 invalid_json
    4. Validate topic / required fields                    -> 400 invalid_payload
    5. Already processed (integration, topic, external id) -> 200 duplicate
    -  Integration disconnected                           -> 200 ignored, no DataPoints
    6. Extract DataPoints (pure mapping per platform/topic)
       - payload the mapping cannot read                   -> 400 invalid_payload
    7. Log `received`
    8. Persist DataPoints + `processed` in one transaction -> 200
       - lost the race to a concurrent delivery            -> 200 duplicate
       - any other persistence error                       -> 500 failed

WHY 200 ON DUPLICATES:
    Platforms retry anything that is not 2xx. A replay we already counted
    is a success from their point of view.

RELATED FILES:
    - storepulse/routers/webhooks.py: HTTP surface
    - storepulse/services/webhook_platforms.py: per-platform hooks
    - storepulse/services/webhook_event_log.py: attempt rows + exactly-once commit
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storepulse.deps import Settings, get_settings
from storepulse.models import (
    Integration,
    IntegrationStatusEnum,
    PlatformEnum,
    WebhookStatusEnum,
)
from storepulse.services.integration_service import soft_disconnect
from storepulse.services.rate_limiter import RateLimiter
from storepulse.services.webhook_event_log import WebhookEventLog
from storepulse.services.webhook_platforms import PayloadError, get_platform
from storepulse.services.webhook_signatures import SignatureFailure
from storepulse.telemetry.sentry import capture_exception, capture_message

logger = logging.getLogger(__name__)

UNKNOWN_TOPIC = "unknown"


@dataclass
class DeliveryResult:
    """What the router sends back to the platform."""

    status_code: int
    body: Dict[str, Any]
    retry_after: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)


def find_webhook_integration(db: Session, organization_id: UUID, platform: PlatformEnum) -> Optional[Integration]:
    """The organization's integration for `platform`.

    A live integration wins; a disconnected one is still returned, so
    retries and late deliveries after an uninstall are acknowledged rather
    than rejected.
    """
    stmt = select(Integration).where(
        Integration.organization_id == organization_id,
        Integration.platform == platform,
    )
    candidates = db.execute(stmt).scalars().all()
    for integration in candidates:
        if integration.status != IntegrationStatusEnum.disconnected:
            return integration
    return candidates[0] if candidates else None


class WebhookIngestionService:
    """
    Usage:
        service = WebhookIngestionService(db)
        result = service.handle_delivery(PlatformEnum.shopify, integration, raw_body, request.headers)
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self._limiter = limiter
        self.clock = clock
        self.log = WebhookEventLog(db)

    @property
    def limiter(self) -> RateLimiter:
        if self._limiter is None:
            from storepulse import state

            self._limiter = state.get_limiter("webhook")
        return self._limiter

    def handle_delivery(
        self,
        platform: PlatformEnum,
        integration: Integration,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> DeliveryResult:
        strategy = get_platform(platform)
        headers = {key.lower(): value for key, value in headers.items()}
        tag = f"[WEBHOOK:{platform.value.upper()}]"

        # 1. Rate limit; the event log is not touched for rejected floods
        limit = self.limiter.check(f"integration:{integration.id}")
        if not limit.allowed:
            logger.info(f"{tag} Rate limited integration {integration.id}")
            return DeliveryResult(
                status_code=429,
                body={"error": "Rate limit exceeded"},
                retry_after=limit.retry_after,
                headers=limit.headers(),
            )

        # 2. Signature
        verification = strategy.verify(
            raw_body,
            headers,
            strategy.secret(self.settings),
            self.settings.WEBHOOK_TOLERANCE_SECONDS,
            now=self.clock(),
        )
        header_topic = headers.get("x-shopify-topic") or UNKNOWN_TOPIC
        if not verification.ok:
            if verification.failure == SignatureFailure.invalid_json:
                self.log.record(integration.id, header_topic, WebhookStatusEnum.invalid_json, error="Invalid JSON")
                return DeliveryResult(400, {"error": "Invalid JSON payload"})

            reason = verification.failure.value if verification.failure else "unknown"
            logger.warning(
                f"{tag} Signature verification failed for integration {integration.id}: {reason}"
            )
            if verification.failure == SignatureFailure.missing_secret:
                # Every delivery for this platform will fail until the secret is configured
                capture_message(
                    f"Webhook secret not configured for {platform.value}",
                    level="warning",
                    integration_id=str(integration.id),
                )
            self.log.record(
                integration.id,
                header_topic,
                WebhookStatusEnum.signature_verification_failed,
                error=reason,
            )
            return DeliveryResult(401, {"error": "Invalid webhook signature"})

        # 3. Parse
        try:
            payload = strategy.parse(raw_body, verification)
        except PayloadError as exc:
            logger.warning(f"{tag} {exc}")
            self.log.record(integration.id, header_topic, WebhookStatusEnum.invalid_json, error=str(exc))
            return DeliveryResult(400, {"error": "Invalid JSON payload"})

        # 4. Validate
        topic = strategy.topic(headers, payload)
        if not topic:
            self.log.record(integration.id, UNKNOWN_TOPIC, WebhookStatusEnum.invalid_payload, error="missing topic")
            return DeliveryResult(400, {"error": "Missing webhook topic"})

        external_id = strategy.external_id(headers, payload)
        problems = strategy.validate(topic, payload)
        if problems:
            detail = "; ".join(problems)
            logger.warning(f"{tag} Invalid {topic} payload: {detail}")
            self.log.record(
                integration.id, topic, WebhookStatusEnum.invalid_payload,
                external_id=external_id, error=detail,
            )
            return DeliveryResult(400, {"error": "Invalid payload", "details": problems})

        # 5. Idempotency fast path
        if self.log.find_processed(integration.id, topic, external_id) is not None:
            logger.info(f"{tag} Duplicate delivery {topic} {external_id}, skipping")
            self.log.record(
                integration.id, topic, WebhookStatusEnum.duplicate,
                external_id=external_id, error="already processed",
            )
            return DeliveryResult(200, {"received": True, "duplicate": True})

        # Uninstalled: acknowledge so the platform stops retrying, count nothing
        if integration.status == IntegrationStatusEnum.disconnected:
            event = self.log.record(integration.id, topic, WebhookStatusEnum.received, external_id=external_id)
            if not self.log.complete(event, []):
                return DeliveryResult(200, {"received": True, "duplicate": True})
            logger.info(f"{tag} Integration {integration.id} is disconnected, ignoring {topic} {external_id}")
            return DeliveryResult(200, {"received": True, "ignored": True, "data_points": 0})

        # 6. Extract (pure); a payload the mapping cannot read is the sender's error
        drafts = []
        if topic not in strategy.lifecycle_topics:
            try:
                drafts = strategy.extract(topic, payload, received_at=datetime.now(timezone.utc))
            except (AttributeError, TypeError, ValueError, ArithmeticError) as exc:
                detail = f"{type(exc).__name__}: {exc}"
                logger.warning(f"{tag} Could not extract metrics from {topic} {external_id}: {detail}")
                self.log.record(
                    integration.id, topic, WebhookStatusEnum.invalid_payload,
                    external_id=external_id, error=detail,
                )
                return DeliveryResult(400, {"error": "Invalid payload", "details": [detail]})

        # 7. Received
        event = self.log.record(integration.id, topic, WebhookStatusEnum.received, external_id=external_id)

        # 8. Persist
        try:
            if topic in strategy.lifecycle_topics:
                return self._handle_lifecycle(event, integration, topic, tag)

            if not self.log.complete(event, drafts):
                return DeliveryResult(200, {"received": True, "duplicate": True})
        except Exception as exc:
            logger.exception(f"{tag} Failed to persist {topic} {external_id}: {exc}")
            capture_exception(exc, platform=platform.value, topic=topic, integration_id=str(integration.id))
            try:
                self.log.mark_failed(event, f"{type(exc).__name__}: {exc}")
            except SQLAlchemyError as log_exc:
                logger.error(f"{tag} Could not mark event {event.id} failed: {log_exc}")
            return DeliveryResult(500, {"error": "Failed to process webhook"})

        logger.info(f"{tag} Processed {topic} {external_id}: {len(drafts)} data points")
        return DeliveryResult(200, {"received": True, "data_points": len(drafts)})

    def _handle_lifecycle(self, event, integration: Integration, topic: str, tag: str) -> DeliveryResult:
        """app/uninstalled, shop/redact: stop trusting the integration, keep its data."""
        if not self.log.complete(event, []):
            return DeliveryResult(200, {"received": True, "duplicate": True})
        soft_disconnect(self.db, integration, reason=topic)
        logger.info(f"{tag} {topic}: integration {integration.id} disconnected")
        return DeliveryResult(200, {"received": True, "disconnected": True})
