"""Tests for the scheduled (cron) jobs of the ARQ worker.

WHAT: Daily insight generation and weekly reports across all organizations
WHY: Periodic reports only exist if the schedule runs them; one broken
     organization must not starve every other one of its report

REFERENCES:
  - storepulse/workers/arq_worker.py
  - storepulse/services/report_generator.py
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from conftest import add_points
from storepulse.models import Insight, Report, ReportTypeEnum
from storepulse.workers import arq_worker
from storepulse.workers.arq_worker import (
    WorkerSettings,
    generate_insights_job,
    generate_weekly_reports_job,
)


def _count(db, model, **filters):
    db.expire_all()
    stmt = select(func.count()).select_from(model)
    for key, value in filters.items():
        stmt = stmt.where(getattr(model, key) == value)
    return db.execute(stmt).scalar_one()


def test_insights_job_covers_every_organization(test_db_session, session_factory, test_organization, test_organization_b):
    result = asyncio.run(generate_insights_job({"session_factory": session_factory}))

    assert result["success"] is True
    assert result["organizations"] == 2
    # No integrations yet: two onboarding insights each
    assert result["stored"] == 4
    assert _count(test_db_session, Insight, organization_id=test_organization.id) == 2
    assert _count(test_db_session, Insight, organization_id=test_organization_b.id) == 2


def test_weekly_report_job_stores_one_report_per_organization(
    test_db_session, session_factory, test_organization, test_organization_b, shopify_integration
):
    add_points(test_db_session, shopify_integration, "revenue", (250, datetime.now(timezone.utc) - timedelta(days=2)))

    result = asyncio.run(generate_weekly_reports_job({"session_factory": session_factory}))

    assert result == {"success": True, "organizations": 2, "stored": 2, "failed": []}
    assert _count(test_db_session, Report, report_type=ReportTypeEnum.weekly) == 2

    report = test_db_session.execute(
        select(Report).where(Report.organization_id == test_organization.id)
    ).scalars().one()
    assert report.content["summary"]["total_revenue"] == 250.0


def test_one_failing_organization_does_not_stop_the_rest(
    monkeypatch, test_db_session, session_factory, test_organization, test_organization_b
):
    real_generate = arq_worker.generate_insights

    def flaky_generate(db, organization_id):
        if organization_id == test_organization.id:
            raise RuntimeError("aggregation exploded")
        return real_generate(db, organization_id)

    monkeypatch.setattr(arq_worker, "generate_insights", flaky_generate)

    result = asyncio.run(generate_insights_job({"session_factory": session_factory}))

    assert result["success"] is False
    assert result["failed"] == [str(test_organization.id)]
    assert _count(test_db_session, Insight, organization_id=test_organization.id) == 0
    assert _count(test_db_session, Insight, organization_id=test_organization_b.id) == 2


def test_no_organizations_is_a_successful_noop(session_factory):
    result = asyncio.run(generate_weekly_reports_job({"session_factory": session_factory}))

    assert result == {"success": True, "organizations": 0, "stored": 0, "failed": []}


def test_worker_schedules_both_jobs():
    scheduled = {job.coroutine: job for job in WorkerSettings.cron_jobs}

    assert set(scheduled) == {generate_insights_job, generate_weekly_reports_job}
    assert scheduled[generate_insights_job].hour == {arq_worker.INSIGHTS_CRON_HOUR}
    assert scheduled[generate_weekly_reports_job].hour == {arq_worker.WEEKLY_REPORT_CRON_HOUR}
