"""Report lane job payloads.

Two payload kinds travel on the ``clinic-reports`` lane:

* ``ScheduleAllReportsJob`` - fan-out trigger; finds every organization due a
  report and enqueues one ``ClinicReportJob`` per organization.
* ``ClinicReportJob`` - build and email one organization's period report.

Payloads are serialised with an explicit ``type`` tag and rebuilt through
``job_from_payload``; handlers dispatch on the concrete class.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Union


class UnknownJobTypeError(ValueError):
    """Raised when a payload carries no recognised ``type`` tag."""


@dataclass(slots=True, frozen=True)
class ScheduleAllReportsJob:
    TYPE: ClassVar[str] = "schedule-all"

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.TYPE}


@dataclass(slots=True, frozen=True)
class ClinicReportJob:
    TYPE: ClassVar[str] = "clinic-report"

    organization_id: str
    organization_name: str
    period_days: int
    admin_emails: tuple[str, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.TYPE,
            "organizationId": self.organization_id,
            "organizationName": self.organization_name,
            "adminEmails": list(self.admin_emails),
            "periodDays": self.period_days,
        }


ReportJobData = Union[ScheduleAllReportsJob, ClinicReportJob]


def job_from_payload(payload: dict[str, Any]) -> ReportJobData:
    job_type = payload.get("type")
    if job_type == ScheduleAllReportsJob.TYPE:
        return ScheduleAllReportsJob()
    if job_type == ClinicReportJob.TYPE:
        return ClinicReportJob(
            organization_id=str(payload["organizationId"]),
            organization_name=str(payload.get("organizationName", "")),
            period_days=int(payload["periodDays"]),
            admin_emails=tuple(payload.get("adminEmails") or ()),
        )
    raise UnknownJobTypeError(f"Unknown report job type {job_type!r}")


__all__ = [
    "ScheduleAllReportsJob",
    "ClinicReportJob",
    "ReportJobData",
    "UnknownJobTypeError",
    "job_from_payload",
]
