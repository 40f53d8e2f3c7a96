"""
Shared pytest fixtures for dispatch backend unit tests.

Provides mock database sessions, an in-memory location store and helpers for
placing technicians at known distances from an origin, without requiring a
live database connection.
"""

import math
import uuid
from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from dispatch.events.dispatchEvents import EventBus
from dispatch.models.service_request import ServiceCategory
from dispatch.models.technician import DEFAULT_RATING, AvailabilityStatus
from dispatch.services.geoService import EARTH_RADIUS_KM
from dispatch.services.locationStore import TechnicianPosition, as_utc

# Toronto city hall
ORIGIN_LAT = 43.6532
ORIGIN_LNG = -79.3832

# Kilometres per degree of latitude on the haversine sphere
KM_PER_DEGREE_LAT = EARTH_RADIUS_KM * math.pi / 180.0


def point_north_of(lat: float, lng: float, km: float) -> tuple[float, float]:
    """A point ``km`` kilometres due north of (lat, lng)."""
    return lat + km / KM_PER_DEGREE_LAT, lng


# ---------------------------------------------------------------------------
# Database session mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db() -> AsyncMock:
    """Async mock of ``AsyncSession``.

    Supports ``db.execute()``, ``db.add()``, ``db.flush()`` and
    ``db.commit()`` out of the box; ``db.info`` holds queued events.
    Individual tests configure ``mock_db.execute`` to control query results.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.info = {}
    return session


@pytest.fixture
def execute_result():
    """Factory for ``Result``-like objects used as ``mock_db.execute`` side effects."""

    def _make(*, scalar=None, rowcount: int = 1, rows=()) -> MagicMock:
        result = MagicMock()
        result.scalar_one_or_none.return_value = scalar
        result.scalars.return_value.all.return_value = list(rows)
        result.rowcount = rowcount
        return result

    return _make


# ---------------------------------------------------------------------------
# In-memory location store
# ---------------------------------------------------------------------------


class FakeLocationStore:
    """Dict-backed ``TechnicianLocationStore`` with the same staleness rule."""

    def __init__(self) -> None:
        self.positions: dict[uuid.UUID, TechnicianPosition] = {}

    def add(
        self,
        category: ServiceCategory,
        lat: Optional[float],
        lng: Optional[float],
        *,
        technician_id: Optional[uuid.UUID] = None,
        availability: AvailabilityStatus = AvailabilityStatus.AVAILABLE,
        rating: float = DEFAULT_RATING,
    ) -> uuid.UUID:
        technician_id = technician_id or uuid.uuid4()
        self.positions[technician_id] = TechnicianPosition(
            technician_id=technician_id,
            service_category=category,
            lat=lat,
            lng=lng,
            rating=rating,
            availability_status=availability,
            reported_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        return technician_id

    async def upsert_location(
        self,
        technician_id,
        lat,
        lng,
        *,
        accuracy=None,
        heading=None,
        speed=None,
        availability=None,
        reported_at,
    ) -> bool:
        reported_at = as_utc(reported_at)
        current = self.positions.get(technician_id)
        if current is not None and current.reported_at and current.reported_at > reported_at:
            return False
        self.positions[technician_id] = TechnicianPosition(
            technician_id=technician_id,
            service_category=current.service_category if current else None,
            lat=lat,
            lng=lng,
            rating=current.rating if current else DEFAULT_RATING,
            availability_status=(
                availability
                or (current.availability_status if current else AvailabilityStatus.AVAILABLE)
            ),
            accuracy=accuracy,
            heading=heading,
            speed=speed,
            reported_at=reported_at,
        )
        return True

    async def get_available_by_category(self, category):
        return [
            p
            for p in self.positions.values()
            if p.service_category == category
            and p.availability_status == AvailabilityStatus.AVAILABLE
            and p.has_location
        ]

    async def get_location(self, technician_id):
        return self.positions.get(technician_id)


@pytest.fixture
def location_store() -> FakeLocationStore:
    return FakeLocationStore()


@pytest.fixture
def place_technician(location_store):
    """Put a technician ``km`` due north of the test origin; returns its id."""

    def _place(km: float, category: ServiceCategory = ServiceCategory.PLUMBER, **kwargs):
        lat, lng = point_north_of(ORIGIN_LAT, ORIGIN_LNG, km)
        return location_store.add(category, lat, lng, **kwargs)

    return _place


@pytest.fixture
def event_bus() -> EventBus:
    """An isolated event bus so tests never touch the process-wide one."""
    return EventBus()
