"""Tests for the dashboard and aggregation endpoints.

WHAT: Period-over-period numbers as the frontend receives them
WHY: "No integrations yet" and "no data yet" must render as zero cards,
     never as errors

REFERENCES:
  - storepulse/routers/dashboard.py
  - storepulse/services/aggregation.py
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from conftest import add_points, make_integration, utc
from storepulse.models import IntegrationStatusEnum, PlatformEnum
from storepulse.routers.dashboard import NO_DATA_MESSAGE, NO_INTEGRATIONS_MESSAGE
from storepulse.services.aggregation import ALL_METRICS


class TestDashboard:

    def test_no_integrations_is_a_normal_state(self, client, test_organization):
        response = client.get(f"/organizations/{test_organization.id}/dashboard")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "no_data"
        assert data["has_data"] is False
        assert data["message"] == NO_INTEGRATIONS_MESSAGE
        assert data["days"] == 30
        assert set(data["metrics"]) == set(ALL_METRICS)
        assert data["metrics"]["revenue"] == {
            "current": 0.0, "previous": 0.0, "change": 0.0, "change_percent": 0.0, "trend": "neutral",
        }

    def test_integration_without_observations(self, client, test_organization, shopify_integration):
        data = client.get(f"/organizations/{test_organization.id}/dashboard").json()

        assert data["state"] == "no_data"
        assert data["message"] == NO_DATA_MESSAGE

    def test_current_vs_previous_window(self, client, test_db_session, test_organization, shopify_integration):
        now = datetime.now(timezone.utc)
        add_points(test_db_session, shopify_integration, "revenue", (100, now - timedelta(days=2)), (50, now - timedelta(days=40)))
        add_points(
            test_db_session, shopify_integration, "orders",
            (1, now - timedelta(days=2)), (1, now - timedelta(days=3)), (1, now - timedelta(days=40)),
        )
        # Outside both windows
        add_points(test_db_session, shopify_integration, "revenue", (999, now - timedelta(days=90)))

        data = client.get(f"/organizations/{test_organization.id}/dashboard?days=30").json()

        assert data["state"] == "ok"
        assert data["message"] is None
        revenue = data["metrics"]["revenue"]
        assert revenue["current"] == 100.0
        assert revenue["previous"] == 50.0
        assert revenue["change"] == 50.0
        assert revenue["change_percent"] == 100.0
        assert revenue["trend"] == "up"

        assert data["metrics"]["orders"]["current"] == 2.0
        assert data["metrics"]["average_order_value"]["current"] == 50.0
        assert data["metrics"]["average_order_value"]["previous"] == 50.0
        assert data["metrics"]["average_order_value"]["trend"] == "neutral"
        # No sessions: conversion rate guarded to 0
        assert data["metrics"]["conversion_rate"]["current"] == 0.0

    def test_disconnected_integrations_are_excluded(self, client, test_db_session, test_organization):
        integration = make_integration(
            test_db_session, test_organization, PlatformEnum.stripe, "acct_1",
            status=IntegrationStatusEnum.disconnected,
        )
        add_points(test_db_session, integration, "revenue", (100, datetime.now(timezone.utc) - timedelta(days=1)))

        data = client.get(f"/organizations/{test_organization.id}/dashboard").json()

        assert data["has_data"] is False
        assert data["message"] == NO_INTEGRATIONS_MESSAGE

    def test_days_must_be_positive(self, client, test_organization):
        assert client.get(f"/organizations/{test_organization.id}/dashboard?days=0").status_code == 422

    def test_unknown_organization(self, client):
        assert client.get(f"/organizations/{uuid4()}/dashboard").status_code == 404


class TestAggregateEndpoint:

    @pytest.fixture
    def january(self, test_db_session, shopify_integration):
        add_points(
            test_db_session, shopify_integration, "revenue",
            (200, utc(2025, 1, 10)),
            (100, utc(2025, 1, 3)),
            # Window end is exclusive
            (500, utc(2025, 1, 15)),
        )
        add_points(test_db_session, shopify_integration, "orders", (1, utc(2025, 1, 10)), (1, utc(2025, 1, 3)))
        add_points(test_db_session, shopify_integration, "sessions", (40, utc(2025, 1, 10)), (50, utc(2025, 1, 3)))

    def test_default_previous_window(self, client, test_organization, january):
        response = client.post(
            f"/organizations/{test_organization.id}/metrics/aggregate",
            json={"current_start": "2025-01-08T00:00:00Z", "current_end": "2025-01-15T00:00:00Z"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["has_data"] is True
        assert data["metrics"]["revenue"]["current"] == 200.0
        assert data["metrics"]["revenue"]["previous"] == 100.0
        assert data["metrics"]["conversion_rate"]["current"] == 2.5
        assert data["metrics"]["conversion_rate"]["previous"] == 2.0
        assert data["window"]["previous"]["start"].startswith("2025-01-01T00:00:00")
        assert data["window"]["previous"]["end"].startswith("2025-01-08T00:00:00")

    def test_explicit_comparison_window(self, client, test_organization, january):
        response = client.post(
            f"/organizations/{test_organization.id}/metrics/aggregate",
            json={
                "current_start": "2025-01-08T00:00:00Z",
                "current_end": "2025-01-16T00:00:00Z",
                "previous_start": "2024-12-01T00:00:00Z",
                "previous_end": "2024-12-02T00:00:00Z",
            },
        )

        revenue = response.json()["metrics"]["revenue"]
        assert revenue["current"] == 700.0
        assert revenue["previous"] == 0.0
        assert revenue["change_percent"] == 100.0

    def test_inverted_window_is_rejected(self, client, test_organization):
        response = client.post(
            f"/organizations/{test_organization.id}/metrics/aggregate",
            json={"current_start": "2025-01-15T00:00:00Z", "current_end": "2025-01-08T00:00:00Z"},
        )

        assert response.status_code == 422

    def test_naive_and_aware_bounds_can_be_mixed(self, client, test_organization, january):
        response = client.post(
            f"/organizations/{test_organization.id}/metrics/aggregate",
            json={"current_start": "2025-01-08T00:00:00", "current_end": "2025-01-15T00:00:00Z"},
        )

        assert response.status_code == 200
        assert response.json()["metrics"]["revenue"]["current"] == 200.0

    def test_mixed_inverted_window_is_still_rejected(self, client, test_organization):
        response = client.post(
            f"/organizations/{test_organization.id}/metrics/aggregate",
            json={
                "current_start": "2025-01-08T00:00:00Z",
                "current_end": "2025-01-15T00:00:00Z",
                "previous_start": "2025-01-02T00:00:00",
                "previous_end": "2025-01-01T00:00:00+00:00",
            },
        )

        assert response.status_code == 422

    def test_foreign_integration_is_not_found(self, client, test_db_session, test_organization, test_organization_b):
        other = make_integration(test_db_session, test_organization_b, PlatformEnum.shopify, "other.myshopify.com")

        response = client.post(
            f"/organizations/{test_organization.id}/metrics/aggregate",
            json={
                "integration_ids": [str(other.id)],
                "current_start": "2025-01-08T00:00:00Z",
                "current_end": "2025-01-15T00:00:00Z",
            },
        )

        assert response.status_code == 404

    def test_explicit_integration_subset(self, client, test_db_session, test_organization, shopify_integration, stripe_integration, january):
        add_points(test_db_session, stripe_integration, "revenue", (1000, utc(2025, 1, 10)))
        body = {"current_start": "2025-01-08T00:00:00Z", "current_end": "2025-01-15T00:00:00Z"}

        everything = client.post(f"/organizations/{test_organization.id}/metrics/aggregate", json=body).json()
        stripe_only = client.post(
            f"/organizations/{test_organization.id}/metrics/aggregate",
            json={**body, "integration_ids": [str(stripe_integration.id)]},
        ).json()

        assert everything["metrics"]["revenue"]["current"] == 1200.0
        assert stripe_only["metrics"]["revenue"]["current"] == 1000.0
