"""
SQLAlchemy model for the users table.

Only the columns the dispatch core reads are modelled here; credentials and
profile details belong to the authentication service.
"""

import enum
import secrets
import string
from typing import Optional

from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin

_CODE_ALPHABET = string.ascii_uppercase + string.digits
VERIFICATION_CODE_LENGTH = 8


def generate_verification_code() -> str:
    """Return a fresh personal code such as ``K7Q2M9XA``."""
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(VERIFICATION_CODE_LENGTH))


class UserRole(str, enum.Enum):
    CLIENT = "client"
    TECHNICIAN = "technician"
    ADMIN = "admin"


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=UserRole.CLIENT,
    )

    # Personal code the client reads out to the technician on site; the
    # technician submits it to complete the service.
    verification_code: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=generate_verification_code,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
