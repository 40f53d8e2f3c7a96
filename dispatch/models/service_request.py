"""
SQLAlchemy model for service_requests.

A request is created by a client in ``pending`` status and claimed by exactly
one technician.  ``status`` and ``technician_id`` are only ever written
through conditional updates in ``dispatch.services.assignmentCoordinator``.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Numeric, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class ServiceCategory(str, enum.Enum):
    ELECTRICIAN = "electrician"
    MECHANIC = "mechanic"
    PLUMBER = "plumber"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Urgency(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EMERGENCY = "emergency"


class ServiceRequest(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "service_requests"

    client_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    technician_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    service_category: Mapped[ServiceCategory] = mapped_column(
        Enum(ServiceCategory, name="service_category", values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus, name="request_status", values_callable=_enum_values),
        nullable=False,
        default=RequestStatus.PENDING,
    )
    urgency: Mapped[Urgency] = mapped_column(
        Enum(Urgency, name="urgency", values_callable=_enum_values),
        nullable=False,
        default=Urgency.MEDIUM,
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Location (immutable once set)
    location_lat: Mapped[Decimal] = mapped_column(Numeric(10, 8), nullable=False)
    location_lng: Mapped[Decimal] = mapped_column(Numeric(11, 8), nullable=False)
    location_address: Mapped[str] = mapped_column(Text, nullable=False)

    # Assignment snapshot
    distance_km: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 3), nullable=True)

    # Lifecycle timestamps
    assigned_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("idx_service_requests_client_id", "client_id"),
        Index("idx_service_requests_technician_id", "technician_id"),
        Index("idx_service_requests_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ServiceRequest(id={self.id}, category={self.service_category}, "
            f"status={self.status}, technician={self.technician_id})>"
        )
