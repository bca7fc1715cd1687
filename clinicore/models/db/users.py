from __future__ import annotations
"""SQLAlchemy model for platform users (clinic staff)."""
import uuid
from typing import TYPE_CHECKING
from sqlalchemy import String, DateTime
from sqlalchemy.orm import relationship, Mapped, mapped_column

if TYPE_CHECKING:  # pragma: no cover
    from .organizations import Member
from sqlalchemy.sql import func
from clinicore.database import Base

class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, unique=True, index=True, nullable=True)
    # Issued by the auth provider; only looked up, never minted here.
    api_key: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    memberships: Mapped[list["Member"]] = relationship("Member", back_populates="user")
