"""
Technician Location Store
=========================

Read/write access to each technician's latest position, availability and
trade.  The matching and ingest paths only depend on the
``TechnicianLocationStore`` protocol; ``SqlTechnicianLocationStore`` is the
production implementation over the ``technician_locations`` table.

Staleness guard: every write carries the technician's own report time and
is applied as a single ``INSERT ... ON CONFLICT DO UPDATE ... WHERE`` so an
older report arriving after a newer one is dropped by the database itself,
never by a read-then-write in Python.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.core.exceptions import TechnicianNotFoundError
from dispatch.models.service_request import ServiceCategory
from dispatch.models.technician import (
    DEFAULT_RATING,
    AvailabilityStatus,
    TechnicianLocation,
)

logger = logging.getLogger(__name__)

_table = TechnicianLocation.__table__


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TechnicianPosition:
    """Snapshot of a technician's live record."""

    technician_id: uuid.UUID
    service_category: ServiceCategory | None
    lat: float | None
    lng: float | None
    rating: float
    availability_status: AvailabilityStatus
    accuracy: float | None = None
    heading: float | None = None
    speed: float | None = None
    reported_at: datetime | None = None

    @property
    def has_location(self) -> bool:
        return self.lat is not None and self.lng is not None


def _to_position(row: TechnicianLocation) -> TechnicianPosition:
    return TechnicianPosition(
        technician_id=row.technician_id,
        service_category=row.service_category,
        lat=row.lat,
        lng=row.lng,
        rating=row.rating,
        availability_status=row.availability_status,
        accuracy=row.accuracy,
        heading=row.heading,
        speed=row.speed,
        reported_at=row.reported_at,
    )


def as_utc(value: datetime) -> datetime:
    """Normalise a report timestamp to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class TechnicianLocationStore(Protocol):
    """Operations the dispatch core needs from the location backing store."""

    async def upsert_location(
        self,
        technician_id: uuid.UUID,
        lat: float,
        lng: float,
        *,
        accuracy: float | None = None,
        heading: float | None = None,
        speed: float | None = None,
        availability: AvailabilityStatus | None = None,
        reported_at: datetime,
    ) -> bool:
        ...

    async def get_available_by_category(
        self,
        category: ServiceCategory,
    ) -> list[TechnicianPosition]:
        ...

    async def get_location(self, technician_id: uuid.UUID) -> TechnicianPosition | None:
        ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlTechnicianLocationStore:
    """``TechnicianLocationStore`` backed by the ``technician_locations`` table.

    Works on PostgreSQL (production) and SQLite (tests); both dialects share
    the same ``ON CONFLICT`` upsert syntax.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    def _insert(self) -> Any:
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(_table)
        if dialect == "sqlite":
            return sqlite.insert(_table)
        raise NotImplementedError(f"Conditional upsert not supported on '{dialect}'")

    async def upsert_location(
        self,
        technician_id: uuid.UUID,
        lat: float,
        lng: float,
        *,
        accuracy: float | None = None,
        heading: float | None = None,
        speed: float | None = None,
        availability: AvailabilityStatus | None = None,
        reported_at: datetime,
    ) -> bool:
        """Write a position report unless a newer one is already stored.

        Returns True when the row was inserted or updated, False when the
        report was older than the stored ``reported_at`` and was dropped.
        A report with the *same* timestamp is applied (last write wins).
        """
        reported_at = as_utc(reported_at)
        values: dict[str, Any] = {
            "id": uuid.uuid4(),
            "technician_id": technician_id,
            "lat": lat,
            "lng": lng,
            "accuracy": accuracy,
            "heading": heading,
            "speed": speed,
            "availability_status": availability or AvailabilityStatus.AVAILABLE,
            "rating": DEFAULT_RATING,
            "reported_at": reported_at,
        }
        stmt = self._insert().values(**values)
        excluded = stmt.excluded
        updates: dict[str, Any] = {
            "lat": excluded.lat,
            "lng": excluded.lng,
            "accuracy": excluded.accuracy,
            "heading": excluded.heading,
            "speed": excluded.speed,
            "reported_at": excluded.reported_at,
            "updated_at": func.now(),
        }
        if availability is not None:
            updates["availability_status"] = excluded.availability_status

        stmt = stmt.on_conflict_do_update(
            index_elements=[_table.c.technician_id],
            set_=updates,
            where=or_(
                _table.c.reported_at.is_(None),
                _table.c.reported_at <= excluded.reported_at,
            ),
        ).returning(_table.c.technician_id)

        result = await self.db.execute(stmt)
        applied = result.scalar_one_or_none() is not None

        if applied:
            logger.debug(
                "Location stored for technician %s: (%.6f, %.6f) at %s",
                technician_id,
                lat,
                lng,
                reported_at.isoformat(),
            )
        else:
            logger.debug(
                "Dropped stale location report for technician %s (reported_at=%s)",
                technician_id,
                reported_at.isoformat(),
            )
        return applied

    async def set_availability(
        self,
        technician_id: uuid.UUID,
        availability: AvailabilityStatus,
        *,
        reported_at: datetime,
    ) -> bool:
        """Toggle availability without touching the stored position.

        Guarded by the same report-time rule as position updates.  Returns
        False if the toggle is older than the stored report.  A technician
        without a record gets one with no trade and no position, so a toggle
        may arrive before registration or the first report.
        """
        reported_at = as_utc(reported_at)
        stmt = self._insert().values(
            id=uuid.uuid4(),
            technician_id=technician_id,
            availability_status=availability,
            rating=DEFAULT_RATING,
            reported_at=reported_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_table.c.technician_id],
            set_={
                "availability_status": stmt.excluded.availability_status,
                "reported_at": stmt.excluded.reported_at,
                "updated_at": func.now(),
            },
            where=or_(
                _table.c.reported_at.is_(None),
                _table.c.reported_at <= stmt.excluded.reported_at,
            ),
        ).returning(_table.c.technician_id)

        result = await self.db.execute(stmt)
        applied = result.scalar_one_or_none() is not None
        logger.info(
            "Availability for technician %s -> %s (applied=%s)",
            technician_id,
            availability.value,
            applied,
        )
        return applied

    async def register_technician(
        self,
        technician_id: uuid.UUID,
        category: ServiceCategory,
        *,
        rating: float | None = None,
    ) -> TechnicianPosition:
        """Create or update the technician's trade (and optionally rating).

        Leaves position, availability and ``reported_at`` untouched, so it
        is safe to call again when the profile is edited.

        Raises:
            TechnicianNotFoundError: If the row cannot be read back.
        """
        stmt = self._insert().values(
            id=uuid.uuid4(),
            technician_id=technician_id,
            service_category=category,
            rating=rating if rating is not None else DEFAULT_RATING,
            availability_status=AvailabilityStatus.AVAILABLE,
        )
        updates: dict[str, Any] = {
            "service_category": stmt.excluded.service_category,
            "updated_at": func.now(),
        }
        if rating is not None:
            updates["rating"] = stmt.excluded.rating
        stmt = stmt.on_conflict_do_update(
            index_elements=[_table.c.technician_id],
            set_=updates,
        )
        await self.db.execute(stmt)

        position = await self.get_location(technician_id)
        if position is None:
            raise TechnicianNotFoundError(technician_id)
        logger.info("Technician %s registered as %s", technician_id, category.value)
        return position

    async def get_available_by_category(
        self,
        category: ServiceCategory,
    ) -> list[TechnicianPosition]:
        stmt = select(TechnicianLocation).where(
            TechnicianLocation.service_category == category,
            TechnicianLocation.availability_status == AvailabilityStatus.AVAILABLE,
            TechnicianLocation.lat.is_not(None),
            TechnicianLocation.lng.is_not(None),
        )
        result = await self.db.execute(stmt)
        return [_to_position(row) for row in result.scalars().all()]

    async def get_location(self, technician_id: uuid.UUID) -> Optional[TechnicianPosition]:
        stmt = (
            select(TechnicianLocation)
            .where(TechnicianLocation.technician_id == technician_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_position(row) if row is not None else None
