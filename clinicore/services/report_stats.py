"""Period statistics for clinic reports."""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from clinicore.models.db import Appointment, AppointmentStatus, Patient


@dataclass(slots=True)
class ReportPeriodStats:
    total_patients: int
    new_patients_this_period: int
    total_appointments: int
    appointments_this_period: int
    completed_appointments: int
    cancelled_appointments: int
    no_show_appointments: int
    completion_rate: str
    no_show_rate: str
    period_days: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def format_rate(part: int, whole: int) -> str:
    """Percentage with one decimal; ``"0"`` when there is nothing to divide by."""
    if whole <= 0:
        return "0"
    return f"{part / whole * 100:.1f}"


def compute_period_stats(
    session: Session,
    organization_id: str,
    period_start: datetime,
    period_end: datetime,
    period_days: int,
) -> ReportPeriodStats:
    # Appointments belong to an organization through their patient.
    def appointments():
        return (
            session.query(func.count(Appointment.id))
            .join(Patient, Appointment.patient_id == Patient.id)
            .filter(Patient.organization_id == organization_id)
        )

    def appointments_in_period():
        return appointments().filter(Appointment.time >= period_start, Appointment.time <= period_end)

    total_patients = session.query(func.count(Patient.id)).filter(Patient.organization_id == organization_id).scalar() or 0
    new_patients = (
        session.query(func.count(Patient.id))
        .filter(Patient.organization_id == organization_id, Patient.created_at >= period_start)
        .scalar()
        or 0
    )
    total_appointments = appointments().scalar() or 0
    in_period = appointments_in_period().scalar() or 0
    completed = appointments_in_period().filter(Appointment.status == AppointmentStatus.COMPLETED).scalar() or 0
    cancelled = appointments_in_period().filter(Appointment.status == AppointmentStatus.CANCELLED).scalar() or 0
    no_show = appointments_in_period().filter(Appointment.status == AppointmentStatus.NO_SHOW).scalar() or 0

    return ReportPeriodStats(
        total_patients=total_patients,
        new_patients_this_period=new_patients,
        total_appointments=total_appointments,
        appointments_this_period=in_period,
        completed_appointments=completed,
        cancelled_appointments=cancelled,
        no_show_appointments=no_show,
        completion_rate=format_rate(completed, in_period),
        no_show_rate=format_rate(no_show, in_period),
        period_days=period_days,
    )


__all__ = ["ReportPeriodStats", "format_rate", "compute_period_stats"]
