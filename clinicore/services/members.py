"""Organization membership lookups used by the report jobs and manual reminders."""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from clinicore.models.db import Member, MemberRole, User


@dataclass(slots=True, frozen=True)
class AdminRecipient:
    email: str
    name: str


def admin_recipients(session: Session, organization_id: str) -> list[AdminRecipient]:
    """Admins of the organization that have an email address."""
    rows = (
        session.query(User.email, User.name)
        .join(Member, Member.user_id == User.id)
        .filter(
            Member.organization_id == organization_id,
            Member.role == MemberRole.ADMIN,
            User.email.is_not(None),
        )
        .order_by(User.email)
        .all()
    )
    return [AdminRecipient(email=email, name=name or "Admin") for email, name in rows if email]


def is_member(session: Session, user_id: str, organization_id: str) -> bool:
    return (
        session.query(Member.id)
        .filter(Member.user_id == user_id, Member.organization_id == organization_id)
        .first()
        is not None
    )


__all__ = ["AdminRecipient", "admin_recipients", "is_member"]
