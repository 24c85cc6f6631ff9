"""Tests for report and insight generation.

WHAT: Reports and insights over HTTP and at the service layer
WHY: Reports are stored artifacts; the summary, score and recommendations
     written at generation time are what merchants read later

REFERENCES:
  - storepulse/routers/reports.py
  - storepulse/services/report_generator.py
  - storepulse/services/report_scorer.py
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import add_points, utc
from storepulse.exceptions import OrganizationNotFoundError
from storepulse.models import Insight, ReportTypeEnum
from storepulse.services.report_generator import ReportGenerator, generate_insights, report_type_for_span


@pytest.fixture
def january_week(test_db_session, shopify_integration):
    """Current week 2025-01-08..15 vs previous week 2025-01-01..08."""
    add_points(test_db_session, shopify_integration, "revenue", (300, utc(2025, 1, 10)), (100, utc(2025, 1, 3)))
    add_points(
        test_db_session, shopify_integration, "orders",
        (1, utc(2025, 1, 9)), (1, utc(2025, 1, 10)), (1, utc(2025, 1, 10)),
        (1, utc(2025, 1, 2)), (1, utc(2025, 1, 3)),
    )
    add_points(test_db_session, shopify_integration, "sessions", (100, utc(2025, 1, 10)), (100, utc(2025, 1, 3)))


class TestReportEndpoints:

    def test_weekly_report_without_integrations(self, client, test_organization):
        response = client.post(f"/organizations/{test_organization.id}/reports", json={"type": "weekly"})

        assert response.status_code == 201
        report = response.json()
        assert report["report_type"] == "weekly"
        assert report["is_read"] is False
        assert report["title"].startswith("Weekly Report - ")
        content = report["content"]
        assert content["summary"]["performance_score"] == 0
        assert content["summary"]["total_revenue"] == 0
        assert content["insights"] == []
        assert [r["title"] for r in content["recommendations"]] == [
            "Continue monitoring performance",
            "Connect your first integration",
        ]
        assert content["organization"]["name"] == "Test Store Co"

    def test_custom_report_with_data(self, client, test_organization, january_week):
        response = client.post(
            f"/organizations/{test_organization.id}/reports",
            json={"type": "custom", "start_date": "2025-01-08T00:00:00Z", "end_date": "2025-01-15T00:00:00Z"},
        )

        assert response.status_code == 201
        report = response.json()
        assert report["report_type"] == "weekly"
        assert report["title"] == "Weekly Report - 2025-01-08"

        summary = report["content"]["summary"]
        assert summary["total_revenue"] == 300.0
        assert summary["total_orders"] == 3.0
        assert summary["average_order_value"] == 100.0
        assert summary["conversion_rate"] == 3.0
        assert summary["revenue_change"] == 200.0
        assert summary["orders_change"] == 50.0
        # 50 + 25 (revenue) + 15 (orders) + 0 (conversion exactly 3%)
        assert summary["performance_score"] == 90

        assert [r["title"] for r in report["content"]["recommendations"]] == ["Increase website traffic"]
        assert report["content"]["metrics"]["orders"] == [
            {"date": "2025-01-09", "value": 1.0},
            {"date": "2025-01-10", "value": 2.0},
        ]

    def test_custom_report_requires_dates(self, client, test_organization):
        response = client.post(f"/organizations/{test_organization.id}/reports", json={"type": "custom"})

        assert response.status_code == 422

    def test_unknown_organization(self, client):
        assert client.post(f"/organizations/{uuid4()}/reports", json={"type": "monthly"}).status_code == 404

    def test_list_mark_read_and_delete(self, client, test_organization, admin_headers):
        base = f"/organizations/{test_organization.id}/reports"
        created = client.post(base, json={"type": "weekly"}).json()

        listed = client.get(base).json()
        assert [r["id"] for r in listed] == [created["id"]]

        updated = client.patch(f"{base}/{created['id']}", json={"is_read": True})
        assert updated.status_code == 200
        assert updated.json()["is_read"] is True

        assert client.delete(f"{base}/{created['id']}").status_code == 403
        assert client.delete(f"{base}/{created['id']}", headers=admin_headers).status_code == 204
        assert client.get(base).json() == []

    def test_reports_are_scoped_to_organization(self, client, test_organization, test_organization_b):
        created = client.post(f"/organizations/{test_organization.id}/reports", json={"type": "weekly"}).json()

        response = client.patch(
            f"/organizations/{test_organization_b.id}/reports/{created['id']}", json={"is_read": True}
        )

        assert response.status_code == 404


class TestInsightEndpoints:

    def test_onboarding_insights_without_integrations(self, client, test_organization):
        response = client.post(f"/organizations/{test_organization.id}/insights/generate")

        assert response.status_code == 201
        titles = [insight["title"] for insight in response.json()]
        assert titles == ["Connect your first data source", "Unlock business intelligence"]
        assert response.json()[0]["metadata"] == {"onboarding": True}

    def test_list_unread_and_mark_read(self, client, test_organization):
        base = f"/organizations/{test_organization.id}/insights"
        client.post(f"{base}/generate")

        insights = client.get(base).json()
        assert [i["impact_score"] for i in insights] == [10.0, 9.0]

        client.patch(f"{base}/{insights[0]['id']}", json={"is_read": True})

        unread = client.get(f"{base}?unread_only=true").json()
        assert [i["id"] for i in unread] == [insights[1]["id"]]

    def test_delete_requires_admin_key(self, client, test_organization, admin_headers):
        base = f"/organizations/{test_organization.id}/insights"
        insight_id = client.post(f"{base}/generate").json()[0]["id"]

        assert client.delete(f"{base}/{insight_id}", headers={"X-Admin-Key": "nope"}).status_code == 403
        assert client.delete(f"{base}/{insight_id}", headers=admin_headers).status_code == 204
        assert len(client.get(base).json()) == 1


class TestReportGenerator:

    def test_monthly_report_is_month_to_date(self, test_db_session, test_organization):
        report = ReportGenerator(test_db_session, now=utc(2025, 3, 17, 9)).generate_monthly(test_organization.id)

        assert report.report_type == ReportTypeEnum.monthly
        assert report.content["period"]["start"] == "2025-03-01T00:00:00+00:00"
        assert report.content["period"]["end"] == "2025-03-17T09:00:00+00:00"

    def test_monthly_report_at_month_start(self, test_db_session, test_organization):
        report = ReportGenerator(test_db_session, now=utc(2025, 3, 1)).generate_monthly(test_organization.id)

        assert report.content["period"]["start"] == "2025-02-28T00:00:00+00:00"

    def test_stored_insights_appear_in_report(self, test_db_session, test_organization, shopify_integration, january_week):
        test_db_session.add(Insight(
            organization_id=test_organization.id,
            type="trend",
            category="revenue",
            title="Revenue growth detected",
            description="Up",
            impact_score=7.5,
            urgency="medium",
            meta={},
        ))
        test_db_session.commit()

        report = ReportGenerator(test_db_session).generate_custom(test_organization.id, utc(2025, 1, 8), utc(2025, 1, 15))

        assert [i["title"] for i in report.content["insights"]] == ["Revenue growth detected"]

    def test_unknown_organization_raises(self, test_db_session):
        with pytest.raises(OrganizationNotFoundError):
            ReportGenerator(test_db_session).generate_weekly(uuid4())

    def test_report_type_for_span(self):
        start = utc(2025, 1, 1)
        assert report_type_for_span(start, start + timedelta(hours=12)) == ReportTypeEnum.daily
        assert report_type_for_span(start, start + timedelta(days=7)) == ReportTypeEnum.weekly
        assert report_type_for_span(start, start + timedelta(days=8)) == ReportTypeEnum.monthly


class TestGenerateInsights:

    def test_revenue_growth_insight(self, test_db_session, test_organization, shopify_integration):
        now = utc(2025, 2, 1)
        add_points(test_db_session, shopify_integration, "revenue", (150, utc(2025, 1, 20)), (100, utc(2024, 12, 20)))

        insights = generate_insights(test_db_session, test_organization.id, now=now)

        assert len(insights) == 1
        insight = insights[0]
        assert insight.type == "trend"
        assert insight.title == "Revenue growth detected"
        assert insight.impact_score == 10
        assert insight.urgency == "high"
        assert insight.meta["previous_total"] == 100.0

    def test_first_sales_are_not_a_trend(self, test_db_session, test_organization, shopify_integration):
        add_points(test_db_session, shopify_integration, "revenue", (150, utc(2025, 1, 20)))

        assert generate_insights(test_db_session, test_organization.id, now=utc(2025, 2, 1)) == []

    def test_low_conversion_insight(self, test_db_session, test_organization, shopify_integration):
        add_points(test_db_session, shopify_integration, "sessions", (1000, utc(2025, 1, 20)))
        add_points(test_db_session, shopify_integration, "orders", (1, utc(2025, 1, 20)))

        insights = generate_insights(test_db_session, test_organization.id, now=utc(2025, 2, 1))

        assert [i.title for i in insights] == ["Low conversion rate detected"]
        assert insights[0].meta["conversion_rate"] == pytest.approx(0.1)
