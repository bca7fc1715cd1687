"""Report eligibility rules.

An organization is due a report when automatic reports are enabled and its
last report is missing or strictly older than ``interval_days``. An
organization reported exactly ``interval_days`` ago is not yet due.

``is_due`` is the single source of truth: the fan-out job and the read-only
status listing both go through it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

from sqlalchemy import or_
from sqlalchemy.orm import Session

from clinicore.config import REPORT_SETTINGS
from clinicore.models.db import Organization
from clinicore.utils.time import days_before, ensure_utc


class ReportSchedulable(Protocol):
    auto_reports_enabled: bool
    last_report_generated_at: Optional[datetime]


@dataclass(slots=True)
class OrganizationReportEligibility:
    organization_id: str
    organization_name: str
    auto_reports_enabled: bool
    last_report_generated_at: Optional[datetime]

    @classmethod
    def from_model(cls, org: Organization) -> "OrganizationReportEligibility":
        last = org.last_report_generated_at
        return cls(
            organization_id=org.id,
            organization_name=org.name,
            auto_reports_enabled=bool(org.auto_reports_enabled),
            last_report_generated_at=ensure_utc(last) if last is not None else None,
        )


def default_interval_days() -> int:
    return int(REPORT_SETTINGS["interval_days"])


def report_cutoff(now: datetime, interval_days: int) -> datetime:
    return days_before(ensure_utc(now), interval_days)


def is_due(org: ReportSchedulable, now: datetime, interval_days: int) -> bool:
    if not org.auto_reports_enabled:
        return False
    if org.last_report_generated_at is None:
        return True
    return ensure_utc(org.last_report_generated_at) < report_cutoff(now, interval_days)


def due_organizations(session: Session, now: datetime, interval_days: int) -> list[Organization]:
    """Organizations due a report, pre-filtered in SQL and confirmed with ``is_due``."""
    cutoff = report_cutoff(now, interval_days)
    candidates = (
        session.query(Organization)
        .filter(
            Organization.auto_reports_enabled.is_(True),
            or_(
                Organization.last_report_generated_at.is_(None),
                Organization.last_report_generated_at < cutoff,
            ),
        )
        .order_by(Organization.name)
        .all()
    )
    return [org for org in candidates if is_due(org, now, interval_days)]


def report_status(session: Session, now: datetime, interval_days: int) -> list[dict[str, Any]]:
    """Every organization with its computed ``needsReport`` flag (operator view)."""
    rows = []
    for org in session.query(Organization).order_by(Organization.name).all():
        eligibility = OrganizationReportEligibility.from_model(org)
        rows.append({
            "id": eligibility.organization_id,
            "name": eligibility.organization_name,
            "autoReportsEnabled": eligibility.auto_reports_enabled,
            "lastReportGeneratedAt": eligibility.last_report_generated_at,
            "needsReport": is_due(eligibility, now, interval_days),
        })
    return rows


__all__ = [
    "OrganizationReportEligibility",
    "default_interval_days",
    "report_cutoff",
    "is_due",
    "due_organizations",
    "report_status",
]
