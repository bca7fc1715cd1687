"""
Clinic report trigger and status endpoints.

Called daily by an external cron as a backup to the recurring schedule, and
by operators to queue a single organization's report on demand.
"""
from typing import Optional
from fastapi import APIRouter, Body, Depends, HTTPException, Request
from sqlalchemy.orm import Session
import time
from clinicore.api.deps import get_db, get_report_queue, require_cron_secret
from clinicore.jobs.job_types import ClinicReportJob
from clinicore.jobs.report_queue import ReportQueue
from clinicore.jobs.store import JobStoreError
from clinicore.models.db import Organization
from clinicore.models.schemas.base import ResponseBase
from clinicore.models.schemas.reports import ReportTrigger, OrganizationReportStatus
from clinicore.services.eligibility import default_interval_days, report_status
from clinicore.services.members import admin_recipients
from clinicore.utils import get_logger, log_business_event, log_performance
from clinicore.utils.time import utc_now

router = APIRouter(dependencies=[Depends(require_cron_secret)])
logger = get_logger(__name__)

# Both endpoints hit the database and the job store synchronously; plain ``def``
# runs them in the threadpool.
@router.post(
    "/",
    response_model=ResponseBase,
    summary="Queue clinic report jobs"
)
def trigger_reports(
    request: Request,
    trigger_data: Optional[ReportTrigger] = Body(None),
    db: Session = Depends(get_db),
    report_queue: ReportQueue = Depends(get_report_queue)
) -> ResponseBase:
    """Queue report work.

    Modes:
      - organizationId provided: queue that organization's report (404 if unknown, 400 without admin emails)
      - otherwise: queue the fan-out job, which selects every organization due a report
    """
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    trigger_data = trigger_data or ReportTrigger()
    interval_days = default_interval_days()

    logger.info(
        "Manual report trigger",
        organization_id=trigger_data.organization_id,
        period_days=trigger_data.period_days,
        request_id=request_id
    )

    try:
        if trigger_data.organization_id:
            org = db.get(Organization, trigger_data.organization_id)
            if org is None:
                raise HTTPException(status_code=404, detail="Organization not found")
            emails = tuple(admin.email for admin in admin_recipients(db, org.id))
            if not emails:
                raise HTTPException(status_code=400, detail="No admin emails found")

            handle = report_queue.add_report_job(
                ClinicReportJob(
                    organization_id=org.id,
                    organization_name=org.name,
                    period_days=trigger_data.period_days or interval_days,
                    admin_emails=emails,
                )
            )
            message = "Report job queued"
            data = {"jobId": handle.id, "jobName": handle.name, "organizationId": org.id}
        else:
            handle = report_queue.schedule_all_reports()
            message = "Report fan-out job queued"
            data = {"jobId": handle.id, "jobName": handle.name, "intervalDays": interval_days}
    except JobStoreError as e:
        logger.error("Report enqueue failed", error=str(e), request_id=request_id, exc_info=True)
        raise HTTPException(status_code=503, detail="Job store unavailable")

    log_business_event(
        event_type="report_job_enqueued",
        details={"job_id": handle.id, "job_name": handle.name},
        organization_id=trigger_data.organization_id,
        request_id=request_id
    )
    log_performance(
        operation="trigger_reports",
        duration_ms=(time.time() - start_time) * 1000,
    )
    return ResponseBase(success=True, message=message, data=data)

@router.get(
    "/status",
    response_model=ResponseBase,
    summary="Report eligibility per organization and queue counts"
)
def get_report_status(
    db: Session = Depends(get_db),
    report_queue: ReportQueue = Depends(get_report_queue)
) -> ResponseBase:
    interval_days = default_interval_days()
    organizations = [
        OrganizationReportStatus.model_validate(row).model_dump(by_alias=True)
        for row in report_status(db, utc_now(), interval_days)
    ]
    try:
        queue_stats = report_queue.get_queue_stats()
    except JobStoreError as e:
        logger.error("Queue stats unavailable", error=str(e))
        raise HTTPException(status_code=503, detail="Job store unavailable")
    return ResponseBase(
        success=True,
        data={
            "intervalDays": interval_days,
            "organizations": organizations,
            "queue": queue_stats,
        }
    )
