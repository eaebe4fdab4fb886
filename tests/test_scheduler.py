"""
Tests — Scheduler service and API (/api/v1/scheduler).

Covers:
    1. Job registry and ScheduledJob rows
    2. run_job success / failure / unknown
    3. toggle_job
    4. Background loop start/stop
    5. API permissions
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from holdingmanager.models import db
from holdingmanager.models.finance import Invoice
from holdingmanager.models.scheduling import ScheduledJob
from holdingmanager.services import scheduler_service
from holdingmanager.services.scheduler_service import SchedulerService, get_registered_jobs

BASE = "/api/v1/scheduler/jobs"


@pytest.fixture()
def jobs():
    """Tables are recreated per test; restore the job rows."""
    return SchedulerService.ensure_jobs_registered()


class TestRegistry:
    def test_alert_scan_registered(self):
        assert "alert_scan" in get_registered_jobs()

    def test_ensure_jobs_registered(self, jobs):
        assert jobs == ["alert_scan"]
        job = ScheduledJob.query.filter_by(job_name="alert_scan").one()
        assert job.is_enabled is True
        assert job.interval_seconds == 0
        assert job.description.startswith("Scan invoices")

    def test_ensure_is_idempotent(self, jobs):
        assert SchedulerService.ensure_jobs_registered() == []
        assert ScheduledJob.query.count() == 1


class TestIsDue:
    NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def _job(self, **kw):
        values = {"job_name": "alert_scan", "is_enabled": True, "interval_seconds": 600}
        values.update(kw)
        return ScheduledJob(**values)

    def test_never_run_is_due(self):
        assert self._job().is_due(self.NOW) is True

    def test_disabled_never_due(self):
        assert self._job(is_enabled=False).is_due(self.NOW) is False

    def test_manual_only_never_due(self):
        assert self._job(interval_seconds=0).is_due(self.NOW) is False

    def test_recent_run_not_due(self):
        job = self._job(last_run_at=self.NOW - timedelta(seconds=60))
        assert job.is_due(self.NOW) is False

    def test_naive_last_run_treated_as_utc(self):
        job = self._job(last_run_at=datetime(2026, 10, 19, 11, 0))
        assert job.is_due(self.NOW) is True


class TestRunJob:
    def test_run_alert_scan(self, jobs):
        db.session.add(Invoice(
            numero="FAC-200", due_date=date.today() - timedelta(days=3),
            total_amount=100, status="sent",
        ))
        db.session.commit()

        result = SchedulerService.run_job("alert_scan")

        assert result["status"] == "success"
        assert result["error"] is None
        assert result["result"]["total_created"] == 1
        job = ScheduledJob.query.filter_by(job_name="alert_scan").one()
        assert job.run_count == 1
        assert job.last_run_status == "success"
        assert job.last_run_result["created"]["invoice_overdue"] == 1

    def test_unknown_job(self):
        result = SchedulerService.run_job("nope")
        assert result == {"job_name": "nope", "status": "error", "error": "Unknown job: nope"}

    def test_failing_job(self):
        def boom(app):
            raise RuntimeError("scan crashed")

        with patch.dict(scheduler_service._job_registry, {"boom": boom}):
            result = SchedulerService.run_job("boom")

        assert result["status"] == "failed"
        assert result["error"] == "scan crashed"

    def test_toggle(self, jobs):
        result = SchedulerService.toggle_job("alert_scan", False)
        assert result["is_enabled"] is False
        assert SchedulerService.toggle_job("nope", True) is None


class TestLoop:
    def test_not_started_without_interval(self):
        assert SchedulerService.start() is False

    def test_start_and_stop(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "ALERT_SCAN_INTERVAL_SECONDS", 3600)
        try:
            assert SchedulerService.start() is True
            assert SchedulerService._thread.is_alive()
            assert SchedulerService.start() is False
        finally:
            SchedulerService.stop()
        assert SchedulerService._thread is None


class TestSchedulerAPI:
    def test_list_requires_admin(self, client, auth_headers, directeur, admin, jobs):
        assert client.get(BASE, headers=auth_headers(directeur)).status_code == 403

        res = client.get(BASE, headers=auth_headers(admin))
        assert res.status_code == 200
        body = res.get_json()
        assert body["total"] == 1
        assert body["jobs"][0]["db_record"]["job_name"] == "alert_scan"

    def test_get_job(self, client, auth_headers, admin, jobs):
        res = client.get(f"{BASE}/alert_scan", headers=auth_headers(admin))
        assert res.status_code == 200
        assert res.get_json()["is_enabled"] is True

        res = client.get(f"{BASE}/nope", headers=auth_headers(admin))
        assert res.status_code == 404

    def test_trigger(self, client, auth_headers, admin, jobs):
        res = client.post(f"{BASE}/alert_scan/trigger", headers=auth_headers(admin))
        assert res.status_code == 200
        assert res.get_json()["status"] == "success"

    def test_trigger_unknown(self, client, auth_headers, admin):
        res = client.post(f"{BASE}/nope/trigger", headers=auth_headers(admin))
        assert res.status_code == 404

    def test_toggle_requires_super_admin(self, client, auth_headers, admin, jobs):
        res = client.patch(f"{BASE}/alert_scan/toggle", json={"enabled": False},
                           headers=auth_headers(admin))
        assert res.status_code == 403

        super_admin = {"X-User-Id": "root", "X-User-Role": "super_admin"}
        res = client.patch(f"{BASE}/alert_scan/toggle", json={"enabled": False},
                           headers=super_admin)
        assert res.status_code == 200
        assert res.get_json()["is_enabled"] is False

        res = client.patch(f"{BASE}/alert_scan/toggle", json={}, headers=super_admin)
        assert res.status_code == 400
