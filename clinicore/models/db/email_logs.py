from __future__ import annotations
"""Append-only log of outbound emails, used for monthly quota accounting and audit."""
import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, Enum, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from clinicore.database import Base
from clinicore.utils.time import utc_now
from .enums import EmailStatus, EmailType, enum_values


class EmailLog(Base):
    __tablename__ = "email_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    organization_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    recipient_email: Mapped[str] = mapped_column(String, nullable=False)
    email_type: Mapped[EmailType] = mapped_column(Enum(EmailType, values_callable=enum_values), nullable=False)
    subject: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[EmailStatus] = mapped_column(Enum(EmailStatus, values_callable=enum_values), nullable=False)
    appointment_id: Mapped[str | None] = mapped_column(String, ForeignKey("appointments.id"), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
