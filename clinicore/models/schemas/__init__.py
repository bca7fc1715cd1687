from .base import ResponseBase
from .reports import ReportTrigger, OrganizationReportStatus
from .reminders import ReminderSweepSummary, PendingReminder

__all__ = [
    "ResponseBase",
    "ReportTrigger",
    "OrganizationReportStatus",
    "ReminderSweepSummary",
    "PendingReminder",
]
