"""
SQLAlchemy models for service_sessions and location_history.

A session is the tracked engagement between a client and the technician
assigned to their request.  The partial unique index guarantees at most one
open (active or paused) session per request even under concurrent starts.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from .service_request import _enum_values


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_SESSION_STATUSES: frozenset[SessionStatus] = frozenset({
    SessionStatus.ACTIVE,
    SessionStatus.PAUSED,
})

_OPEN_SESSION_PREDICATE = text("status IN ('active', 'paused')")


class ServiceSession(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "service_sessions"

    service_request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("service_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    technician_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="session_status", values_callable=_enum_values),
        nullable=False,
        default=SessionStatus.ACTIVE,
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index(
            "uq_service_sessions_open_request",
            "service_request_id",
            unique=True,
            postgresql_where=_OPEN_SESSION_PREDICATE,
            sqlite_where=_OPEN_SESSION_PREDICATE,
        ),
        Index("idx_service_sessions_technician_status", "technician_id", "status"),
        Index("idx_service_sessions_client_status", "client_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ServiceSession(id={self.id}, request={self.service_request_id}, "
            f"status={self.status})>"
        )


class LocationHistoryEntry(UUIDPrimaryKeyMixin, Base):
    """Append-only breadcrumb recorded while a session is active."""

    __tablename__ = "location_history"

    service_session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("service_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    technician_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "service_session_id",
            "recorded_at",
            name="uq_location_history_session_recorded_at",
        ),
        Index("idx_location_history_technician_time", "technician_id", "recorded_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LocationHistoryEntry(session={self.service_session_id}, "
            f"lat={self.lat}, lng={self.lng}, at={self.recorded_at})>"
        )
