"""
SQLAlchemy model for technician_locations.

One row per technician holding the latest reported position, availability
and service category.  Rows are only written by the owning technician's own
reports, and a report older than ``reported_at`` is never applied.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from .service_request import ServiceCategory, _enum_values


class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


DEFAULT_RATING: float = 4.5


class TechnicianLocation(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "technician_locations"

    technician_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    # Null until the technician registers a trade; such rows never match.
    service_category: Mapped[Optional[ServiceCategory]] = mapped_column(
        Enum(ServiceCategory, name="service_category", values_callable=_enum_values),
        nullable=True,
    )
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=DEFAULT_RATING)

    # Last known position (null until first report)
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    heading: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    availability_status: Mapped[AvailabilityStatus] = mapped_column(
        Enum(AvailabilityStatus, name="availability_status", values_callable=_enum_values),
        nullable=False,
        default=AvailabilityStatus.AVAILABLE,
    )

    # Timestamp carried by the technician's own report; drives the
    # staleness guard.
    reported_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index(
            "idx_technician_locations_category_availability",
            "service_category",
            "availability_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TechnicianLocation(technician={self.technician_id}, "
            f"lat={self.lat}, lng={self.lng}, status={self.availability_status})>"
        )
