"""Appointment reminder sweep, preview and manual send.

The sweep finds scheduled appointments starting within the reminder window
that have not been reminded yet, and emails each patient once. Every
outcome is counted; expected gaps in the data (no patient email, no
organization, quota reached) are skips rather than errors.

Each appointment is committed on its own so the email log (and with it the
monthly quota count) reflects sends made earlier in the same sweep.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session, selectinload

from clinicore.config import REMINDER_SETTINGS
from clinicore.integrations.email import Mailer, build_appointment_reminder_email
from clinicore.models.db import (
    Appointment,
    AppointmentStatus,
    EmailLog,
    EmailStatus,
    EmailType,
    Organization,
)
from clinicore.services.email_quota import quota_reached
from clinicore.services.members import is_member
from clinicore.utils import get_logger, log_business_event
from clinicore.utils.time import ensure_utc, utc_now

logger = get_logger(__name__)

FAILED_REMINDER_SUBJECT = "Appointment Reminder"


class ReminderError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AppointmentNotFound(ReminderError):
    status_code = 404


class OrganizationNotFound(ReminderError):
    status_code = 404


class ReminderNotAllowed(ReminderError):
    status_code = 403


class MissingRecipient(ReminderError):
    status_code = 400


class EmailQuotaExceeded(ReminderError):
    status_code = 429


@dataclass
class ReminderSweepResult:
    total: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


def _window_end(now: datetime) -> datetime:
    return now + timedelta(hours=float(REMINDER_SETTINGS["window_hours"]))


def pending_reminders_query(session: Session, now: datetime):
    return (
        session.query(Appointment)
        .options(selectinload(Appointment.patient))
        .filter(
            Appointment.time >= now,
            Appointment.time <= _window_end(now),
            Appointment.status == AppointmentStatus.SCHEDULED,
            Appointment.reminder_sent.is_(False),
        )
        .order_by(Appointment.time)
    )


def _reminder_message(appointment: Appointment, organization: Organization):
    patient = appointment.patient
    return build_appointment_reminder_email(
        to=patient.email,
        patient_name=patient.full_name,
        appointment_time=ensure_utc(appointment.time),
        appointment_type=appointment.type,
        doctor_name=appointment.doctor_name,
        clinic_name=organization.name,
        notes=appointment.notes,
    )


def _log_email(
    session: Session,
    appointment: Appointment,
    status: EmailStatus,
    subject: str,
    now: datetime,
) -> None:
    session.add(
        EmailLog(
            organization_id=appointment.organization_id,
            recipient_email=appointment.patient.email,
            email_type=EmailType.APPOINTMENT_REMINDER,
            subject=subject,
            status=status,
            appointment_id=appointment.id,
            sent_at=now,
        )
    )


def _mark_reminded(appointment: Appointment, now: datetime) -> None:
    appointment.reminder_sent = True
    appointment.reminder_sent_at = now


def run_reminder_sweep(session: Session, mailer: Mailer, now: Optional[datetime] = None) -> ReminderSweepResult:
    now = ensure_utc(now or utc_now())
    appointments = pending_reminders_query(session, now).all()
    result = ReminderSweepResult(total=len(appointments))
    logger.info("Reminder sweep started", candidates=result.total)

    for appointment in appointments:
        patient = appointment.patient
        if patient is None or not patient.email:
            result.skipped += 1
            logger.info("Skipping reminder without patient email", appointment_id=appointment.id)
            continue
        if not appointment.organization_id:
            result.skipped += 1
            logger.info("Skipping reminder without organization", appointment_id=appointment.id)
            continue
        organization = session.get(Organization, appointment.organization_id)
        if organization is None:
            result.skipped += 1
            logger.warning(
                "Skipping reminder for missing organization",
                appointment_id=appointment.id,
                organization_id=appointment.organization_id,
            )
            continue
        if quota_reached(session, organization.id, now):
            result.skipped += 1
            result.errors.append(f"Org {organization.id}: Monthly email limit reached")
            logger.warning("Monthly email limit reached", organization_id=organization.id, appointment_id=appointment.id)
            continue

        message = _reminder_message(appointment, organization)
        try:
            mailer.send(message)
        except Exception as e:
            result.failed += 1
            result.errors.append(f"Appointment {appointment.id}: {e}")
            _log_email(session, appointment, EmailStatus.FAILED, FAILED_REMINDER_SUBJECT, now)
            session.commit()
            logger.warning("Reminder send failed", appointment_id=appointment.id, error=str(e))
            continue

        _log_email(session, appointment, EmailStatus.SENT, message.subject, now)
        _mark_reminded(appointment, now)
        session.commit()
        result.sent += 1

    logger.info("Reminder sweep finished", **result.to_dict())
    return result


def preview_pending_reminders(session: Session, now: Optional[datetime] = None) -> list[dict[str, Any]]:
    """Reminders the next sweep would consider, without sending or mutating anything."""
    now = ensure_utc(now or utc_now())
    appointments = pending_reminders_query(session, now).all()
    org_ids = {a.organization_id for a in appointments if a.organization_id}
    names: dict[str, str] = {}
    if org_ids:
        for org_id, name in session.query(Organization.id, Organization.name).filter(Organization.id.in_(org_ids)).all():
            names[org_id] = name

    preview = []
    for appointment in appointments:
        patient = appointment.patient
        preview.append({
            "id": appointment.id,
            "patientName": patient.full_name if patient else None,
            "patientEmail": patient.email if patient else None,
            "time": ensure_utc(appointment.time),
            "type": appointment.type,
            "organization": names.get(appointment.organization_id or "", "Unknown"),
        })
    return preview


def send_single_reminder(
    session: Session,
    mailer: Mailer,
    appointment_id: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Send one reminder on behalf of a staff member of the appointment's organization.

    Raises a ``ReminderError`` subclass carrying the HTTP status for every
    refusal. A transport failure is logged as a failed email and re-raised.
    """
    now = ensure_utc(now or utc_now())
    appointment = (
        session.query(Appointment)
        .options(selectinload(Appointment.patient))
        .filter(Appointment.id == appointment_id)
        .first()
    )
    if appointment is None:
        raise AppointmentNotFound("Appointment not found")
    if not appointment.organization_id:
        raise MissingRecipient("Appointment has no organization")
    if not is_member(session, user_id, appointment.organization_id):
        raise ReminderNotAllowed("Not a member of this organization")
    if appointment.patient is None or not appointment.patient.email:
        raise MissingRecipient("Patient has no email")
    organization = session.get(Organization, appointment.organization_id)
    if organization is None:
        raise OrganizationNotFound("Organization not found")
    if quota_reached(session, organization.id, now):
        raise EmailQuotaExceeded("Monthly email limit reached")

    message = _reminder_message(appointment, organization)
    try:
        mailer.send(message)
    except Exception:
        _log_email(session, appointment, EmailStatus.FAILED, FAILED_REMINDER_SUBJECT, now)
        session.commit()
        raise

    _log_email(session, appointment, EmailStatus.SENT, message.subject, now)
    _mark_reminded(appointment, now)
    session.commit()
    log_business_event(
        "reminder_sent_manually",
        {"appointment_id": appointment.id, "user_id": user_id},
        organization_id=organization.id,
    )
    return {"appointmentId": appointment.id, "recipient": appointment.patient.email, "sentAt": now}


__all__ = [
    "ReminderError",
    "AppointmentNotFound",
    "OrganizationNotFound",
    "ReminderNotAllowed",
    "MissingRecipient",
    "EmailQuotaExceeded",
    "ReminderSweepResult",
    "pending_reminders_query",
    "run_reminder_sweep",
    "preview_pending_reminders",
    "send_single_reminder",
]
