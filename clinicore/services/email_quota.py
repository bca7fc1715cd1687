"""Monthly per-organization email quota, counted from the append-only email log.

The check is read-then-send without a lock: two concurrent senders can both
see ``limit - 1`` and overshoot the ceiling by a few emails.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from clinicore.config import REMINDER_SETTINGS
from clinicore.models.db import EmailLog
from clinicore.utils.time import start_of_month


def monthly_email_limit() -> int:
    return int(REMINDER_SETTINGS["monthly_email_limit"])


def monthly_email_count(session: Session, organization_id: str, now: datetime) -> int:
    return (
        session.query(func.count(EmailLog.id))
        .filter(EmailLog.organization_id == organization_id, EmailLog.sent_at >= start_of_month(now))
        .scalar()
        or 0
    )


def quota_reached(session: Session, organization_id: str, now: datetime) -> bool:
    return monthly_email_count(session, organization_id, now) >= monthly_email_limit()


__all__ = ["monthly_email_limit", "monthly_email_count", "quota_reached"]
