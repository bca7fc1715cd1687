import inspect
from datetime import timedelta

from fastapi.routing import APIRoute

from clinicore import config
from clinicore.main import app
from clinicore.utils.time import utc_now


def test_trigger_single_org_report(client, report_queue, organization_factory, member_factory):
    org = organization_factory("Eastside")
    member_factory(org, email="boss@eastside.com")

    r = client.post("/api/v1/reports/", json={"organizationId": org.id, "periodDays": 7})
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["organizationId"] == org.id
    assert data["jobName"] == f"report-{org.id}"

    job = report_queue.store.get_job(report_queue.lane, data["jobId"])
    assert job.payload["periodDays"] == 7
    assert job.payload["adminEmails"] == ["boss@eastside.com"]


def test_trigger_unknown_org_is_404(client):
    r = client.post("/api/v1/reports/", json={"organizationId": "nope"})
    assert r.status_code == 404
    assert r.json()["message"] == "Organization not found"


def test_trigger_org_without_admin_email_is_400(client, organization_factory, member_factory):
    org = organization_factory()
    member_factory(org, email=None)
    r = client.post("/api/v1/reports/", json={"organizationId": org.id})
    assert r.status_code == 400
    assert r.json()["message"] == "No admin emails found"


def test_trigger_without_body_queues_fan_out(client, report_queue):
    r = client.post("/api/v1/reports/")
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["jobName"] == "schedule-all-reports"
    assert data["intervalDays"] == config.REPORT_SETTINGS["interval_days"]
    assert report_queue.get_queue_stats()["waiting"] == 1


def test_period_days_is_validated(client, organization_factory):
    org = organization_factory()
    r = client.post("/api/v1/reports/", json={"organizationId": org.id, "periodDays": 0})
    assert r.status_code == 422


def test_report_status_lists_eligibility(client, organization_factory):
    due = organization_factory("Due", last_report_generated_at=None)
    fresh = organization_factory("Fresh", last_report_generated_at=utc_now() - timedelta(hours=1))
    off = organization_factory("Off", auto_reports_enabled=False)

    r = client.get("/api/v1/reports/status")
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    by_id = {row["id"]: row for row in data["organizations"]}
    assert by_id[due.id]["needsReport"] is True
    assert by_id[fresh.id]["needsReport"] is False
    assert by_id[off.id]["needsReport"] is False
    assert by_id[off.id]["autoReportsEnabled"] is False
    assert set(data["queue"]) == {"waiting", "active", "completed", "failed", "delayed"}


def test_closed_job_store_is_503(client, job_store):
    job_store.close()
    r = client.post("/api/v1/reports/")
    assert r.status_code == 503


def test_cron_secret_required_in_production(client, monkeypatch):
    monkeypatch.setattr(config, "APP_ENV", "production")
    monkeypatch.setattr(config, "CRON_SECRET", "s3cret")

    assert client.post("/api/v1/reports/").status_code == 401
    assert client.post("/api/v1/reports/", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api/v1/reminders/").status_code == 401

    ok = client.post("/api/v1/reports/", headers={"Authorization": "Bearer s3cret"})
    assert ok.status_code == 200


def test_health_reports_queue_counts(client, report_queue):
    report_queue.schedule_all_reports()
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["queue"]["backend"] == "memory"
    assert body["queue"]["counts"]["waiting"] == 1


def test_blocking_endpoints_run_in_the_threadpool():
    blocking = [
        route for route in app.routes
        if isinstance(route, APIRoute) and (route.path.startswith("/api/v1/") or route.path == "/health")
    ]
    assert {route.path for route in blocking} >= {"/api/v1/reports/", "/api/v1/reports/status", "/health"}
    assert [route.path for route in blocking if inspect.iscoroutinefunction(route.endpoint)] == []
