import datetime
import uuid as _uuid
from typing import Optional

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Users service owns identity. Email/phone uniqueness only applies to rows
# that are not soft-deleted, so it is checked in the directory rather than
# with a plain UNIQUE constraint.

ROLES = ("user", "admin", "moderator")


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    pass


class UserModel(Base):
    __tablename__ = "users"

    id:            Mapped[str]                         = mapped_column(String(36), primary_key=True, default=lambda: str(_uuid.uuid4()))
    email:         Mapped[str]                         = mapped_column(String(255), index=True)
    phone:         Mapped[Optional[str]]               = mapped_column(String(32), index=True, nullable=True)
    password:      Mapped[Optional[str]]               = mapped_column(String(255), nullable=True)
    first_name:    Mapped[Optional[str]]               = mapped_column(String(50), nullable=True)
    last_name:     Mapped[Optional[str]]               = mapped_column(String(50), nullable=True)
    name:          Mapped[Optional[str]]               = mapped_column(String(101), nullable=True)
    role:          Mapped[str]                         = mapped_column(String(20), default="user")
    is_active:     Mapped[bool]                        = mapped_column(Boolean, default=True)
    is_verified:   Mapped[bool]                        = mapped_column(Boolean, default=False)
    last_login_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at:    Mapped[datetime.datetime]           = mapped_column(DateTime(timezone=True), default=_now)
    updated_at:    Mapped[datetime.datetime]           = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)
    deleted_at:    Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<UserModel id={self.id} email={self.email!r} role={self.role} is_active={self.is_active}>"
