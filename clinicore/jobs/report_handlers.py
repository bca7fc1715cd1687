"""Handlers for the ``clinic-reports`` lane.

``ReportJobProcessor`` is the callable handed to ``ReportWorker``. It rebuilds
the typed payload and dispatches on its class:

* ``ScheduleAllReportsJob`` -> ``schedule_all``: enqueue one report job per
  organization that is due and has at least one admin email.
* ``ClinicReportJob`` -> ``generate_report``: compute period statistics,
  email every admin and stamp ``last_report_generated_at``.

Any exception escaping a handler fails the job and the store's retry policy
takes over. Per-recipient email failures are caught and reported in the
result instead.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from clinicore.integrations.email import Mailer, build_clinic_report_email
from clinicore.jobs.job_types import (
    ClinicReportJob,
    ScheduleAllReportsJob,
    UnknownJobTypeError,
    job_from_payload,
)
from clinicore.jobs.report_queue import ReportQueue
from clinicore.jobs.store import Job
from clinicore.models.db import EmailLog, EmailStatus, EmailType, Organization
from clinicore.services.eligibility import default_interval_days, due_organizations
from clinicore.services.members import admin_recipients
from clinicore.services.report_stats import compute_period_stats
from clinicore.utils import get_logger, log_business_event
from clinicore.utils.time import days_before, utc_now

logger = get_logger(__name__)

ProgressCallback = Callable[[int], None]


@dataclass(slots=True)
class EmailDispatchResult:
    email: str
    status: EmailStatus
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"email": self.email, "status": self.status.value}
        if self.error is not None:
            data["error"] = self.error
        return data


class ReportJobProcessor:
    def __init__(
        self,
        session_factory: sessionmaker,
        mailer: Mailer,
        report_queue: ReportQueue,
        *,
        interval_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._mailer = mailer
        self._report_queue = report_queue
        self.interval_days = interval_days if interval_days is not None else default_interval_days()
        self._clock = clock

    def __call__(self, job: Job, report_progress: ProgressCallback) -> dict[str, Any]:
        data = job_from_payload(job.payload)
        if isinstance(data, ScheduleAllReportsJob):
            return self.schedule_all(report_progress)
        if isinstance(data, ClinicReportJob):
            return self.generate_report(data, report_progress)
        raise UnknownJobTypeError(f"No handler for job payload {type(data).__name__}")

    def schedule_all(self, report_progress: ProgressCallback) -> dict[str, Any]:
        report_progress(10)
        now = self._clock()
        queued: list[dict[str, Any]] = []
        session: Session = self._session_factory()
        try:
            organizations = due_organizations(session, now, self.interval_days)
            report_progress(50)
            for org in organizations:
                emails = tuple(admin.email for admin in admin_recipients(session, org.id))
                if not emails:
                    logger.info("Skipping organization without admin emails", organization_id=org.id)
                    continue
                handle = self._report_queue.add_report_job(
                    ClinicReportJob(
                        organization_id=org.id,
                        organization_name=org.name,
                        period_days=self.interval_days,
                        admin_emails=emails,
                    )
                )
                queued.append({"organizationId": org.id, "organizationName": org.name, "jobId": handle.id})
        finally:
            session.close()

        report_progress(100)
        result = {"totalOrganizations": len(organizations), "jobsQueued": len(queued), "jobs": queued}
        log_business_event(
            "report_fan_out_completed",
            {"total_organizations": result["totalOrganizations"], "jobs_queued": result["jobsQueued"]},
        )
        return result

    def generate_report(self, data: ClinicReportJob, report_progress: ProgressCallback) -> dict[str, Any]:
        report_progress(10)
        now = self._clock()
        period_start = days_before(now, data.period_days)
        results: list[EmailDispatchResult] = []
        session: Session = self._session_factory()
        try:
            organization = session.get(Organization, data.organization_id)
            if organization is None:
                logger.warning("Skipping report for missing organization", organization_id=data.organization_id)
                report_progress(100)
                return {
                    "organizationId": data.organization_id,
                    "organizationName": data.organization_name,
                    "emailsSent": 0,
                    "emailsFailed": 0,
                    "results": [],
                }
            report_progress(20)
            stats = compute_period_stats(session, organization.id, period_start, now, data.period_days)
            report_progress(60)

            # Admins are looked up again here; the payload's list may be stale.
            admins = admin_recipients(session, organization.id)
            report_progress(70)
            for admin in admins:
                message = build_clinic_report_email(
                    to=admin.email,
                    admin_name=admin.name,
                    clinic_name=organization.name,
                    stats=stats,
                    period_start=period_start,
                    period_end=now,
                )
                try:
                    self._mailer.send(message)
                    results.append(EmailDispatchResult(admin.email, EmailStatus.SENT))
                except Exception as e:
                    logger.warning(
                        "Report email failed",
                        organization_id=organization.id,
                        recipient=admin.email,
                        error=str(e),
                    )
                    results.append(EmailDispatchResult(admin.email, EmailStatus.FAILED, str(e)))
                session.add(
                    EmailLog(
                        organization_id=organization.id,
                        recipient_email=admin.email,
                        email_type=EmailType.CLINIC_REPORT,
                        subject=message.subject,
                        status=results[-1].status,
                        sent_at=now,
                    )
                )
            report_progress(90)

            # Stamped even when every email failed.
            organization.last_report_generated_at = now
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        sent = sum(1 for r in results if r.status == EmailStatus.SENT)
        report_progress(100)
        logger.info(
            "Clinic report generated",
            organization_id=data.organization_id,
            emails_sent=sent,
            emails_failed=len(results) - sent,
        )
        return {
            "organizationId": data.organization_id,
            "organizationName": data.organization_name,
            "emailsSent": sent,
            "emailsFailed": len(results) - sent,
            "results": [r.to_dict() for r in results],
        }


__all__ = ["EmailDispatchResult", "ReportJobProcessor"]
