"""Report worker end to end: fan-out, single-organization reports and retries."""
import time
from datetime import timedelta

from clinicore.jobs.job_types import ClinicReportJob
from clinicore.jobs.store import BackoffOptions, JobOptions, JobState, JobStoreUnavailable
from clinicore.jobs.worker import ReportWorker
from clinicore.models.db import EmailLog, Organization
from clinicore.models.db.enums import AppointmentStatus, EmailStatus, EmailType, MemberRole
from clinicore.services.report_stats import format_rate
from clinicore.utils.time import ensure_utc

from conftest import NOW


def _refresh_org(db_session, org_id):
    db_session.expire_all()
    return db_session.get(Organization, org_id)


def test_fan_out_then_report_for_never_reported_org(
    report_queue, report_worker, mailer, organization_factory, member_factory, db_session, clock
):
    org = organization_factory("Org X", last_report_generated_at=None)
    member_factory(org, email="a@x.com")

    fan_out = report_queue.schedule_all_reports()
    report_worker.run_once()

    result = report_queue.store.get_job(report_queue.lane, fan_out.id).return_value
    assert result["totalOrganizations"] == 1
    assert result["jobsQueued"] == 1
    assert result["jobs"][0]["organizationId"] == org.id

    assert report_worker.drain() == 1
    assert mailer.recipients == ["a@x.com"]
    assert mailer.sent[0].subject == "3-Day Performance Report - Org X"
    refreshed = _refresh_org(db_session, org.id)
    assert ensure_utc(refreshed.last_report_generated_at) == clock()


def test_org_without_admin_email_is_never_queued(
    report_queue, report_worker, mailer, organization_factory, member_factory, db_session
):
    org = organization_factory("Org Y")
    member_factory(org, email=None)
    member_factory(org, role=MemberRole.MEMBER, email="staff@y.com")

    fan_out = report_queue.schedule_all_reports()
    report_worker.drain()

    result = report_queue.store.get_job(report_queue.lane, fan_out.id).return_value
    assert result["totalOrganizations"] == 1
    assert result["jobsQueued"] == 0
    assert mailer.attempted == []
    assert _refresh_org(db_session, org.id).last_report_generated_at is None


def test_fan_out_skips_disabled_and_recent_orgs(report_queue, report_worker, organization_factory, member_factory):
    disabled = organization_factory("Disabled", auto_reports_enabled=False)
    recent = organization_factory("Recent", last_report_generated_at=NOW - timedelta(days=1))
    boundary = organization_factory("Boundary", last_report_generated_at=NOW - timedelta(days=3))
    stale = organization_factory("Stale", last_report_generated_at=NOW - timedelta(days=5))
    for org in (disabled, recent, boundary, stale):
        member_factory(org)

    fan_out = report_queue.schedule_all_reports()
    report_worker.run_once()

    result = report_queue.store.get_job(report_queue.lane, fan_out.id).return_value
    assert [job["organizationId"] for job in result["jobs"]] == [stale.id]


def test_partial_email_failure_still_completes(
    report_queue, report_worker, mailer, organization_factory, member_factory, db_session, clock
):
    org = organization_factory("Partial")
    for email in ("ok@p.com", "bad1@p.com", "bad2@p.com"):
        member_factory(org, email=email)
    mailer.failing = {"bad1@p.com", "bad2@p.com"}

    handle = report_queue.add_report_job(
        ClinicReportJob(organization_id=org.id, organization_name=org.name, period_days=3, admin_emails=("ok@p.com",))
    )
    report_worker.run_once()

    job = report_queue.store.get_job(report_queue.lane, handle.id)
    assert job.state == JobState.COMPLETED
    assert job.return_value["emailsSent"] == 1
    assert job.return_value["emailsFailed"] == 2
    failed = [r for r in job.return_value["results"] if r["status"] == "failed"]
    assert {r["email"] for r in failed} == {"bad1@p.com", "bad2@p.com"}
    assert all("550" in r["error"] for r in failed)
    assert ensure_utc(_refresh_org(db_session, org.id).last_report_generated_at) == clock()

    logs = db_session.query(EmailLog).filter(EmailLog.organization_id == org.id).all()
    assert len(logs) == 3
    assert {log.email_type for log in logs} == {EmailType.CLINIC_REPORT}
    assert sorted(log.status.value for log in logs) == ["failed", "failed", "sent"]


def test_admins_are_refetched_at_send_time(report_queue, report_worker, mailer, organization_factory, member_factory):
    org = organization_factory("Refetch")
    member_factory(org, email="current@r.com")
    report_queue.add_report_job(
        ClinicReportJob(organization_id=org.id, organization_name=org.name, period_days=3, admin_emails=("former@r.com",))
    )
    report_worker.run_once()
    assert mailer.recipients == ["current@r.com"]


def test_report_without_appointments_has_zero_rates(
    report_queue, report_worker, mailer, organization_factory, member_factory, patient_factory
):
    org = organization_factory("Quiet")
    member_factory(org, email="admin@q.com")
    patient_factory(org, created_at=NOW - timedelta(days=1))

    report_queue.add_report_job(
        ClinicReportJob(organization_id=org.id, organization_name=org.name, period_days=3, admin_emails=("admin@q.com",))
    )
    report_worker.run_once()

    body = mailer.sent[0].text
    assert "Completion rate: 0%" in body
    assert "No-show rate: 0%" in body
    assert "New patients: 1" in body


def test_report_statistics_use_the_period_window(
    report_queue, report_worker, mailer, organization_factory, member_factory, patient_factory, appointment_factory
):
    org = organization_factory("Busy")
    member_factory(org, email="admin@b.com")
    patient = patient_factory(org)
    other_org_patient = patient_factory(organization_factory("Other"))
    appointment_factory(patient, time=NOW - timedelta(days=1), status=AppointmentStatus.COMPLETED)
    appointment_factory(patient, time=NOW - timedelta(days=2), status=AppointmentStatus.COMPLETED)
    appointment_factory(patient, time=NOW - timedelta(hours=5), status=AppointmentStatus.NO_SHOW)
    appointment_factory(patient, time=NOW - timedelta(days=10), status=AppointmentStatus.CANCELLED)
    appointment_factory(other_org_patient, time=NOW - timedelta(days=1), status=AppointmentStatus.COMPLETED)

    report_queue.add_report_job(
        ClinicReportJob(organization_id=org.id, organization_name=org.name, period_days=3, admin_emails=("admin@b.com",))
    )
    report_worker.run_once()

    body = mailer.sent[0].text
    assert "Total appointments: 4" in body
    assert "Appointments this period: 3" in body
    assert "Cancelled: 0" in body
    assert "Completion rate: 66.7%" in body
    assert "No-show rate: 33.3%" in body


def test_format_rate():
    assert format_rate(0, 0) == "0"
    assert format_rate(2, 3) == "66.7"
    assert format_rate(3, 3) == "100.0"


def test_unknown_payload_fails_and_retries(report_queue, report_worker):
    store = report_queue.store
    store.add(report_queue.lane, "legacy", {"organizationId": "org-1"},
              JobOptions.defaults(job_id="legacy", backoff=BackoffOptions(delay_ms=0)))
    failures = []
    report_worker.on("failed", lambda job, err: failures.append(type(err).__name__))

    assert report_worker.drain() == 3
    job = store.get_job(report_queue.lane, "legacy")
    assert job.state == JobState.FAILED
    assert job.attempts_made == 3
    assert failures == ["UnknownJobTypeError"] * 3


def test_handler_retry_then_success_law(job_store, report_queue):
    calls = {"n": 0}

    def flaky(job, report_progress):
        calls["n"] += 1
        if calls["n"] < 3:
            raise RuntimeError("transient")
        report_progress(100)
        return {"ok": True}

    worker = ReportWorker(job_store, flaky, lane=report_queue.lane)
    completed = []
    worker.on("completed", lambda job, result: completed.append(result))
    job_store.add(report_queue.lane, "flaky", {}, JobOptions.defaults(job_id="flaky", backoff=BackoffOptions(delay_ms=0)))

    worker.drain()

    stored = job_store.get_job(report_queue.lane, "flaky")
    assert [s.value for s in stored.state_history] == [
        "waiting", "active", "failed", "waiting", "active", "failed", "waiting", "active", "completed",
    ]
    assert stored.progress == 100
    assert completed == [{"ok": True}]


def test_listener_errors_do_not_break_processing(job_store, report_queue):
    worker = ReportWorker(job_store, lambda job, progress: "done", lane=report_queue.lane)
    worker.on("completed", lambda job, result: 1 / 0)
    job_store.add(report_queue.lane, "x", {}, JobOptions.defaults(job_id="x"))
    worker.run_once()
    assert job_store.get_job(report_queue.lane, "x").state == JobState.COMPLETED


def test_threaded_worker_start_and_shutdown(job_store, report_queue):
    seen = []
    worker = ReportWorker(job_store, lambda job, progress: seen.append(job.id), lane=report_queue.lane,
                          concurrency=3, poll_timeout=0.05)
    worker.start()
    try:
        for i in range(5):
            job_store.add(report_queue.lane, f"job-{i}", {}, JobOptions.defaults(job_id=f"job-{i}"))
        deadline = time.time() + 5
        while len(seen) < 5 and time.time() < deadline:
            time.sleep(0.02)
    finally:
        worker.shutdown(timeout=5)
    assert sorted(seen) == [f"job-{i}" for i in range(5)]
    assert worker.is_running is False
    assert job_store.get_counts(report_queue.lane)["completed"] == 5


def test_lease_is_renewed_while_a_long_job_runs(job_store, report_queue, clock):
    redelivered = []

    def slow(job, report_progress):
        clock.advance(seconds=20)
        time.sleep(0.2)
        clock.advance(seconds=20)
        redelivered.append(job_store.fetch_next(report_queue.lane, block=False))
        return "done"

    worker = ReportWorker(job_store, slow, lane=report_queue.lane, lease_renew_interval=0.01)
    job_store.add(report_queue.lane, "slow", {}, JobOptions.defaults(job_id="slow"))

    assert worker.run_once() is not None
    assert redelivered == [None]
    stored = job_store.get_job(report_queue.lane, "slow")
    assert stored.state == JobState.COMPLETED
    assert stored.attempts_made == 0


def test_unrecorded_completion_is_retried_once_the_lease_lapses(job_store, report_queue, clock, monkeypatch):
    runs = []
    worker = ReportWorker(job_store, lambda job, progress: runs.append(job.attempts_started), lane=report_queue.lane)
    errors = []
    worker.on("error", errors.append)
    job_store.add(report_queue.lane, "x", {}, JobOptions.defaults(job_id="x", backoff=BackoffOptions(delay_ms=0)))

    real_complete = job_store.complete

    def lost_connection(job, return_value=None):
        raise JobStoreUnavailable("Failed to complete job x")

    monkeypatch.setattr(job_store, "complete", lost_connection)
    job = job_store.fetch_next(report_queue.lane, block=False)
    assert worker.process(job) == JobState.ACTIVE
    assert [type(e) for e in errors] == [JobStoreUnavailable]
    assert job_store.get_counts(report_queue.lane)["active"] == 1

    monkeypatch.setattr(job_store, "complete", real_complete)
    clock.advance(seconds=31)
    assert worker.run_once() is not None

    stored = job_store.get_job(report_queue.lane, "x")
    assert stored.state == JobState.COMPLETED
    assert stored.attempts_made == 1
    assert runs == [1, 2]
