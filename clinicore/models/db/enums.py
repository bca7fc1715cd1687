"""Central Enum definitions for core domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, job handlers and the reminder sweep.
"""
from __future__ import annotations
import enum


class MemberRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class EmailStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"


class EmailType(str, enum.Enum):
    APPOINTMENT_REMINDER = "appointment_reminder"
    CLINIC_REPORT = "clinic_report"


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum *values* (e.g. 'no-show') rather than member names."""
    return [member.value for member in enum_cls]


__all__ = [
    "MemberRole",
    "AppointmentStatus",
    "EmailStatus",
    "EmailType",
    "enum_values",
]
