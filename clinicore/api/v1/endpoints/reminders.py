"""
Appointment reminder endpoints: cron-triggered sweep, dry-run preview and manual send.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
import time
from clinicore.api.deps import get_current_user, get_db, get_mailer, require_cron_secret
from clinicore.integrations.email import Mailer
from clinicore.models.db import User
from clinicore.models.schemas.base import ResponseBase
from clinicore.models.schemas.reminders import PendingReminder, ReminderSweepSummary
from clinicore.services.reminders import (
    ReminderError,
    preview_pending_reminders,
    run_reminder_sweep,
    send_single_reminder,
)
from clinicore.utils import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)

# Every endpoint here does blocking database or SMTP work; plain ``def`` keeps it
# off the event loop.
@router.post(
    "/",
    response_model=ResponseBase,
    summary="Send reminders for appointments in the next 24 hours",
    dependencies=[Depends(require_cron_secret)]
)
def trigger_reminder_sweep(
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer)
) -> ResponseBase:
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    result = run_reminder_sweep(db, mailer)
    summary = ReminderSweepSummary(**result.to_dict())

    log_business_event(
        event_type="reminder_sweep_completed",
        details={"total": summary.total, "sent": summary.sent, "failed": summary.failed, "skipped": summary.skipped},
        request_id=request_id
    )
    log_performance(
        operation="reminder_sweep",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"total": summary.total}
    )
    return ResponseBase(
        success=True,
        message=f"Processed {summary.total} appointments",
        data=summary.model_dump()
    )

@router.get(
    "/",
    response_model=ResponseBase,
    summary="Preview reminders the next sweep would send",
    dependencies=[Depends(require_cron_secret)]
)
def preview_reminders(
    db: Session = Depends(get_db)
) -> ResponseBase:
    pending = [
        PendingReminder.model_validate(row).model_dump(by_alias=True)
        for row in preview_pending_reminders(db)
    ]
    return ResponseBase(
        success=True,
        data={"count": len(pending), "appointments": pending}
    )

@router.post(
    "/{appointment_id}",
    response_model=ResponseBase,
    summary="Send a reminder for one appointment"
)
def send_reminder(
    appointment_id: str,
    request: Request,
    db: Session = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    current_user: User = Depends(get_current_user)
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    try:
        sent = send_single_reminder(db, mailer, appointment_id, current_user.id)
    except ReminderError as e:
        logger.info(
            "Manual reminder refused",
            appointment_id=appointment_id,
            user_id=current_user.id,
            reason=e.message,
            request_id=request_id
        )
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ResponseBase(success=True, message="Reminder sent successfully", data=sent)
