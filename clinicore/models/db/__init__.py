from .users import User
from .organizations import Organization, Member
from .patients import Patient
from .appointments import Appointment
from .email_logs import EmailLog
from .enums import MemberRole, AppointmentStatus, EmailStatus, EmailType

__all__ = [
    "User",
    "Organization",
    "Member",
    "Patient",
    "Appointment",
    "EmailLog",
    "MemberRole",
    "AppointmentStatus",
    "EmailStatus",
    "EmailType",
]
