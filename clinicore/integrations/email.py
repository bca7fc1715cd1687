"""Outbound email: message building and SMTP delivery.

Two message kinds are produced here:
- clinic performance reports, sent to organization admins by the report jobs
- appointment reminders, sent to patients by the reminder sweep

``Mailer`` is the seam the jobs and services depend on; tests inject a
recording fake, production uses ``SmtpMailer``.
"""
from __future__ import annotations

import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Any, Optional, Protocol

from clinicore.config import EMAIL_SETTINGS
from clinicore.services.report_stats import ReportPeriodStats
from clinicore.utils import get_logger

logger = get_logger(__name__)


class EmailDeliveryError(RuntimeError):
    """SMTP transport failed or rejected the message."""


@dataclass(slots=True)
class OutgoingEmail:
    to: str
    subject: str
    text: str
    html: str
    from_name: str = "Clinicore"


class Mailer(Protocol):
    def send(self, message: OutgoingEmail) -> None: ...


class SmtpMailer:
    def __init__(self, settings: Optional[dict[str, Any]] = None) -> None:
        cfg = dict(EMAIL_SETTINGS if settings is None else settings)
        self.host = str(cfg.get("smtp_host") or "localhost")
        self.port = int(cfg.get("smtp_port") or 587)
        self.user = cfg.get("smtp_user")
        self.password = cfg.get("smtp_password")
        self.use_tls = bool(cfg.get("use_tls", True))
        self.timeout = int(cfg.get("timeout_seconds") or 15)
        self.from_address = str(cfg.get("from_address") or "no-reply@clinicore.local")

    def _build(self, message: OutgoingEmail) -> EmailMessage:
        email_message = EmailMessage()
        email_message["From"] = formataddr((message.from_name, self.from_address))
        email_message["To"] = message.to
        email_message["Subject"] = message.subject
        email_message.set_content(message.text)
        email_message.add_alternative(message.html, subtype="html")
        return email_message

    def send(self, message: OutgoingEmail) -> None:
        email_message = self._build(message)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp_client:
                if self.use_tls:
                    smtp_client.starttls()
                if self.user:
                    smtp_client.login(str(self.user), str(self.password or ""))
                smtp_client.send_message(email_message)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("SMTP delivery failed", recipient=message.to, subject=message.subject, error=str(e))
            raise EmailDeliveryError(str(e)) from e
        logger.debug("Email sent", recipient=message.to, subject=message.subject)


def _dashboard_url() -> str:
    return str(EMAIL_SETTINGS.get("dashboard_url") or "").rstrip("/")


def build_clinic_report_email(
    to: str,
    admin_name: str,
    clinic_name: str,
    stats: ReportPeriodStats,
    period_start: datetime,
    period_end: datetime,
) -> OutgoingEmail:
    start_label = period_start.strftime("%b %d")
    end_label = period_end.strftime("%b %d, %Y")
    subject = f"{stats.period_days}-Day Performance Report - {clinic_name}"
    rows = [
        ("Total patients", str(stats.total_patients)),
        ("New patients", str(stats.new_patients_this_period)),
        ("Total appointments", str(stats.total_appointments)),
        ("Appointments this period", str(stats.appointments_this_period)),
        ("Completed", str(stats.completed_appointments)),
        ("Cancelled", str(stats.cancelled_appointments)),
        ("No-shows", str(stats.no_show_appointments)),
        ("Completion rate", f"{stats.completion_rate}%"),
        ("No-show rate", f"{stats.no_show_rate}%"),
    ]
    text_lines = [
        f"Hi {admin_name},",
        "",
        f"Here is the {stats.period_days}-day summary for {clinic_name} ({start_label} - {end_label}).",
        "",
    ]
    text_lines += [f"{label}: {value}" for label, value in rows]
    text_lines += ["", f"Open your dashboard: {_dashboard_url()}/dashboard"]

    table = "".join(
        f"<tr><td>{escape(label)}</td><td><strong>{escape(value)}</strong></td></tr>" for label, value in rows
    )
    html = (
        f"<h2>{escape(clinic_name)}</h2>"
        f"<p>Hi {escape(admin_name)},</p>"
        f"<p>Performance summary for {escape(start_label)} - {escape(end_label)}.</p>"
        f"<table>{table}</table>"
        f"<p><a href=\"{escape(_dashboard_url())}/dashboard\">View dashboard</a></p>"
    )
    return OutgoingEmail(to=to, subject=subject, text="\n".join(text_lines), html=html, from_name=f"{clinic_name} Reports")


def build_appointment_reminder_email(
    to: str,
    patient_name: str,
    appointment_time: datetime,
    appointment_type: str,
    doctor_name: Optional[str],
    clinic_name: str,
    notes: Optional[str] = None,
) -> OutgoingEmail:
    date_label = appointment_time.strftime("%A, %B %d, %Y")
    time_label = appointment_time.strftime("%H:%M")
    subject = f"Appointment Reminder - {appointment_time.strftime('%b %d')}"
    details = [
        ("Date", date_label),
        ("Time", f"{time_label} UTC"),
        ("Type", appointment_type),
    ]
    if doctor_name:
        details.append(("Doctor", doctor_name))
    if notes:
        details.append(("Notes", notes))

    text_lines = [
        f"Hi {patient_name},",
        "",
        f"This is a reminder of your upcoming appointment at {clinic_name}.",
        "",
    ]
    text_lines += [f"{label}: {value}" for label, value in details]
    text_lines += ["", "If you need to reschedule, please contact the clinic."]

    items = "".join(f"<li>{escape(label)}: {escape(value)}</li>" for label, value in details)
    html = (
        f"<p>Hi {escape(patient_name)},</p>"
        f"<p>This is a reminder of your upcoming appointment at <strong>{escape(clinic_name)}</strong>.</p>"
        f"<ul>{items}</ul>"
        "<p>If you need to reschedule, please contact the clinic.</p>"
    )
    return OutgoingEmail(to=to, subject=subject, text="\n".join(text_lines), html=html, from_name=clinic_name)


__all__ = [
    "EmailDeliveryError",
    "OutgoingEmail",
    "Mailer",
    "SmtpMailer",
    "build_clinic_report_email",
    "build_appointment_reminder_email",
]
