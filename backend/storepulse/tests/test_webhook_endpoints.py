"""Tests for the webhook intake endpoints.

WHAT: Signed Shopify/Stripe deliveries end to end over HTTP
WHY: The webhook routes are the only unauthenticated write path; every
     rejection branch must leave an audit row and never create DataPoints

REFERENCES:
  - storepulse/routers/webhooks.py
  - storepulse/services/webhook_ingestion.py
"""

import asyncio
import time
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select

from conftest import shopify_delivery, stripe_delivery, utc
from storepulse import state
from storepulse.models import (
    DataPoint,
    IntegrationStatusEnum,
    WebhookEvent,
    WebhookStatusEnum,
)
from storepulse.services.metric_store import as_utc
from storepulse.services.rate_limiter import InMemoryCounterStore, RateLimitConfig, RateLimiter
from storepulse.services.webhook_ingestion import WebhookIngestionService


def _points(db):
    db.expire_all()
    return db.execute(select(DataPoint).order_by(DataPoint.metric_type)).scalars().all()


def _events(db):
    db.expire_all()
    return db.execute(select(WebhookEvent).order_by(WebhookEvent.received_at)).scalars().all()


class TestShopifyWebhook:

    def test_paid_order_creates_revenue_and_orders(self, client, test_db_session, test_organization, shopify_integration, shopify_order):
        body, headers = shopify_delivery(shopify_order)

        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "data_points": 2}

        points = _points(test_db_session)
        assert [p.metric_type for p in points] == ["orders", "revenue"]
        orders, revenue = points
        assert revenue.value == Decimal("100.00")
        assert revenue.meta["currency"] == "USD"
        assert revenue.meta["order_id"] == "820982911946154508"
        assert orders.value == Decimal("1")
        # Business time, not ingestion time
        assert as_utc(revenue.date_recorded) == utc(2025, 1, 15, 15, 0)
        assert as_utc(orders.date_recorded) == utc(2025, 1, 15, 15, 0)

        events = _events(test_db_session)
        assert len(events) == 1
        assert events[0].status == WebhookStatusEnum.processed
        assert events[0].topic == "orders/paid"
        assert events[0].external_id == "820982911946154508"
        assert events[0].processed_at is not None

    def test_replay_is_acknowledged_without_new_data(self, client, test_db_session, test_organization, shopify_integration, shopify_order):
        body, headers = shopify_delivery(shopify_order)
        url = f"/webhooks/shopify?org={test_organization.id}"

        first = client.post(url, content=body, headers=headers)
        second = client.post(url, content=body, headers=headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json() == {"received": True, "duplicate": True}
        assert len(_points(test_db_session)) == 2
        assert [e.status for e in _events(test_db_session)] == [
            WebhookStatusEnum.processed,
            WebhookStatusEnum.duplicate,
        ]

    def test_bad_signature_is_rejected_and_logged(self, client, test_db_session, test_organization, shopify_integration, shopify_order):
        body, headers = shopify_delivery(shopify_order, secret="wrong-secret")

        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 401
        assert _points(test_db_session) == []
        events = _events(test_db_session)
        assert len(events) == 1
        assert events[0].status == WebhookStatusEnum.signature_verification_failed
        assert events[0].error == "digest_mismatch"

    def test_missing_signature_header(self, client, test_db_session, test_organization, shopify_integration, shopify_order):
        body, headers = shopify_delivery(shopify_order)
        del headers["X-Shopify-Hmac-SHA256"]

        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 401
        assert _events(test_db_session)[0].error == "missing_header"

    def test_signed_but_invalid_json(self, client, test_db_session, test_organization, shopify_integration):
        body, headers = shopify_delivery(None, raw=b"{not json")

        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 400
        assert _events(test_db_session)[0].status == WebhookStatusEnum.invalid_json
        assert _points(test_db_session) == []

    def test_order_without_total_is_invalid_payload(self, client, test_db_session, test_organization, shopify_integration, shopify_order):
        del shopify_order["total_price"]
        body, headers = shopify_delivery(shopify_order, topic="orders/create")

        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 400
        assert "missing field 'total_price'" in response.json()["details"]
        event = _events(test_db_session)[0]
        assert event.status == WebhookStatusEnum.invalid_payload
        assert event.external_id == "820982911946154508"

    def test_unknown_topic_is_processed_with_no_data(self, client, test_db_session, test_organization, shopify_integration):
        body, headers = shopify_delivery({"id": 42, "title": "Hat"}, topic="products/update")

        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["data_points"] == 0
        assert _events(test_db_session)[0].status == WebhookStatusEnum.processed

    def test_missing_org_parameter(self, client, shopify_order):
        body, headers = shopify_delivery(shopify_order)

        assert client.post("/webhooks/shopify", content=body, headers=headers).status_code == 400
        assert client.post("/webhooks/shopify?org=not-a-uuid", content=body, headers=headers).status_code == 400

    def test_unknown_organization(self, client, shopify_order):
        body, headers = shopify_delivery(shopify_order)

        response = client.post(f"/webhooks/shopify?org={uuid4()}", content=body, headers=headers)

        assert response.status_code == 404

    def test_app_uninstalled_disconnects_integration(self, client, test_db_session, test_organization, shopify_integration, shopify_order):
        body, headers = shopify_delivery({"id": 548380009, "domain": "test-store.myshopify.com"}, topic="app/uninstalled")

        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "disconnected": True}

        test_db_session.refresh(shopify_integration)
        assert shopify_integration.status == IntegrationStatusEnum.disconnected
        assert shopify_integration.credentials_enc is None
        assert shopify_integration.disconnected_at is not None
        assert _events(test_db_session)[0].status == WebhookStatusEnum.processed

        # Late deliveries for the uninstalled shop are acknowledged, not counted
        body, headers = shopify_delivery(shopify_order)
        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"received": True, "ignored": True, "data_points": 0}
        assert _points(test_db_session) == []

    def test_uninstall_replay_after_disconnect_succeeds(self, client, test_db_session, test_organization, shopify_integration):
        body, headers = shopify_delivery({"id": 548380009, "domain": "test-store.myshopify.com"}, topic="app/uninstalled")
        url = f"/webhooks/shopify?org={test_organization.id}"

        first = client.post(url, content=body, headers=headers)
        second = client.post(url, content=body, headers=headers)

        assert first.status_code == 200
        assert first.json() == {"received": True, "disconnected": True}
        assert second.status_code == 200
        assert second.json() == {"received": True, "duplicate": True}
        assert [e.status for e in _events(test_db_session)] == [WebhookStatusEnum.processed, WebhookStatusEnum.duplicate]

    def test_order_replay_after_disconnect_is_still_a_duplicate(
        self, client, test_db_session, test_organization, shopify_integration, shopify_order
    ):
        url = f"/webhooks/shopify?org={test_organization.id}"
        body, headers = shopify_delivery(shopify_order)
        assert client.post(url, content=body, headers=headers).json()["data_points"] == 2

        uninstall, uninstall_headers = shopify_delivery({"id": 548380009}, topic="app/uninstalled")
        assert client.post(url, content=uninstall, headers=uninstall_headers).status_code == 200

        response = client.post(url, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": True}
        assert len(_points(test_db_session)) == 2

    def test_refund_with_malformed_transactions_is_not_a_server_error(
        self, client, test_db_session, test_organization, shopify_integration
    ):
        body, headers = shopify_delivery({"id": 77, "order_id": 1, "transactions": ["oops"]}, topic="refunds/create")

        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "data_points": 0}
        assert _points(test_db_session) == []

    def test_ingestion_runs_off_the_event_loop(self, client, monkeypatch, test_organization, shopify_integration, shopify_order):
        seen = []
        original = WebhookIngestionService.handle_delivery

        def spy(self, *args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen.append("event_loop")
            except RuntimeError:
                seen.append("worker_thread")
            return original(self, *args, **kwargs)

        monkeypatch.setattr(WebhookIngestionService, "handle_delivery", spy)
        body, headers = shopify_delivery(shopify_order)

        response = client.post(f"/webhooks/shopify?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 200
        assert seen == ["worker_thread"]

    def test_rate_limited_delivery(self, client, test_db_session, test_organization, shopify_integration, shopify_order):
        state.limiters["webhook"] = RateLimiter(
            RateLimitConfig(2, 60, "webhook", fail_open=False),
            InMemoryCounterStore(),
        )
        url = f"/webhooks/shopify?org={test_organization.id}"

        for order_id in (1, 2):
            body, headers = shopify_delivery({**shopify_order, "id": order_id})
            assert client.post(url, content=body, headers=headers).status_code == 200

        body, headers = shopify_delivery({**shopify_order, "id": 3})
        response = client.post(url, content=body, headers=headers)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"
        # Rejected floods do not touch the event log
        assert len(_events(test_db_session)) == 2


class TestStripeWebhook:

    @staticmethod
    def _event(event_id="evt_1", type_="payment_intent.succeeded", amount=4999):
        return {
            "id": event_id,
            "type": type_,
            "created": 1736942400,
            "data": {
                "object": {
                    "id": "pi_1",
                    "amount": amount,
                    "currency": "usd",
                    "customer": "cus_1",
                    "created": 1736942400,
                }
            },
        }

    def test_payment_succeeded_creates_revenue(self, client, test_db_session, test_organization, stripe_integration):
        body, headers = stripe_delivery(self._event())

        response = client.post(f"/webhooks/stripe?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "data_points": 1}
        (point,) = _points(test_db_session)
        assert point.metric_type == "revenue"
        assert point.value == Decimal("49.99")
        assert point.meta["currency"] == "USD"
        assert point.meta["payment_intent_id"] == "pi_1"
        assert as_utc(point.date_recorded) == utc(2025, 1, 15, 12, 0)
        assert _events(test_db_session)[0].external_id == "evt_1"

    def test_stale_timestamp_is_rejected(self, client, test_db_session, test_organization, stripe_integration):
        body, headers = stripe_delivery(self._event(), timestamp=int(time.time()) - 301)

        response = client.post(f"/webhooks/stripe?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 401
        event = _events(test_db_session)[0]
        assert event.status == WebhookStatusEnum.signature_verification_failed
        assert event.error == "timestamp_out_of_tolerance"

    def test_event_without_object_is_invalid(self, client, test_db_session, test_organization, stripe_integration):
        event = self._event()
        event["data"] = {}
        body, headers = stripe_delivery(event)

        response = client.post(f"/webhooks/stripe?org={test_organization.id}", content=body, headers=headers)

        assert response.status_code == 400
        assert _events(test_db_session)[0].status == WebhookStatusEnum.invalid_payload

    def test_same_event_id_on_another_integration_is_independent(
        self, client, test_db_session, test_organization, test_organization_b, stripe_integration
    ):
        from conftest import make_integration
        from storepulse.models import PlatformEnum

        make_integration(test_db_session, test_organization_b, PlatformEnum.stripe, "acct_other", "sk_test_other")

        for org in (test_organization, test_organization_b):
            body, headers = stripe_delivery(self._event())
            response = client.post(f"/webhooks/stripe?org={org.id}", content=body, headers=headers)
            assert response.json() == {"received": True, "data_points": 1}

        assert len(_points(test_db_session)) == 2
