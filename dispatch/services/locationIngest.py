"""
Location Ingest
===============

Entry point for technician position reports.

Each report:
  1. is checked against its session (must exist and belong to the reporter)
     before anything is written
  2. upserts the technician's live record, staleness guarded by report time
  3. appends a ``location_history`` breadcrumb, but only while the session
     is ``active``; paused or ended sessions update the live record only

Reports are handled one at a time with no buffering; a retried report is
harmless because both the live upsert and the history insert are idempotent
for the same ``reported_at``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.core.exceptions import SessionNotFoundError, TechnicianNotFoundError
from dispatch.models.session import LocationHistoryEntry, ServiceSession, SessionStatus
from dispatch.models.technician import AvailabilityStatus
from dispatch.services import sessionLifecycle
from dispatch.services.geoService import validate_coordinate
from dispatch.services.locationStore import (
    SqlTechnicianLocationStore,
    TechnicianLocationStore,
    TechnicianPosition,
    as_utc,
)

logger = logging.getLogger(__name__)

_history = LocationHistoryEntry.__table__


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LocationReportResult:
    """What a single report changed."""

    applied: bool
    history_recorded: bool
    reported_at: datetime


def _history_insert(db: AsyncSession) -> Any:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(_history)
    if dialect == "sqlite":
        return sqlite.insert(_history)
    raise NotImplementedError(f"Idempotent history insert not supported on '{dialect}'")


async def _record_history(
    db: AsyncSession,
    session: ServiceSession,
    lat: float,
    lng: float,
    accuracy: float | None,
    recorded_at: datetime,
) -> bool:
    stmt = (
        _history_insert(db)
        .values(
            id=uuid.uuid4(),
            service_session_id=session.id,
            technician_id=session.technician_id,
            lat=lat,
            lng=lng,
            accuracy=accuracy,
            recorded_at=recorded_at,
        )
        .on_conflict_do_nothing(
            index_elements=[_history.c.service_session_id, _history.c.recorded_at]
        )
        .returning(_history.c.id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def report_location(
    db: AsyncSession,
    technician_id: uuid.UUID,
    lat: float,
    lng: float,
    *,
    accuracy: float | None = None,
    heading: float | None = None,
    speed: float | None = None,
    session_id: uuid.UUID | None = None,
    availability: AvailabilityStatus | None = None,
    reported_at: datetime | None = None,
    store: TechnicianLocationStore | None = None,
) -> LocationReportResult:
    """Ingest one position report from a technician.

    Args:
        db: Async database session.
        technician_id: The reporting technician (from the bearer token).
        lat: Latitude in degrees.
        lng: Longitude in degrees.
        accuracy: Horizontal accuracy in metres.
        heading: Direction of travel in degrees.
        speed: Speed in m/s.
        session_id: Session the report belongs to, if any.
        availability: Optional availability change carried with the report.
        reported_at: Device timestamp; defaults to now.
        store: Location store override.

    Returns:
        ``LocationReportResult`` with ``applied`` False when the report was
        older than the stored one.

    Raises:
        InvalidCoordinateError: If the position is out of range.
        SessionNotFoundError: If the session is unknown or not the reporter's.
    """
    validate_coordinate(lat, lng)
    reported_at = as_utc(reported_at or datetime.now(timezone.utc))

    session: Optional[ServiceSession] = None
    if session_id is not None:
        try:
            session = await sessionLifecycle.get_session(db, session_id)
        except SessionNotFoundError:
            logger.warning(
                "Technician %s reported location for unknown session %s",
                technician_id,
                session_id,
            )
            raise
        if session.technician_id != technician_id:
            logger.warning(
                "Technician %s reported location for session %s owned by %s",
                technician_id,
                session_id,
                session.technician_id,
            )
            raise SessionNotFoundError(session_id)

    store = store if store is not None else SqlTechnicianLocationStore(db)
    applied = await store.upsert_location(
        technician_id,
        lat,
        lng,
        accuracy=accuracy,
        heading=heading,
        speed=speed,
        availability=availability,
        reported_at=reported_at,
    )

    history_recorded = False
    if session is not None and session.status == SessionStatus.ACTIVE:
        history_recorded = await _record_history(
            db, session, lat, lng, accuracy, reported_at
        )

    logger.debug(
        "Location report from %s: applied=%s history=%s session=%s",
        technician_id,
        applied,
        history_recorded,
        session_id,
    )
    return LocationReportResult(
        applied=applied,
        history_recorded=history_recorded,
        reported_at=reported_at,
    )


async def get_history(
    db: AsyncSession,
    session_id: uuid.UUID,
    *,
    limit: int | None = None,
) -> list[LocationHistoryEntry]:
    """Chronological breadcrumb trail of a session."""
    await sessionLifecycle.get_session(db, session_id)

    stmt = (
        select(LocationHistoryEntry)
        .where(LocationHistoryEntry.service_session_id == session_id)
        .order_by(LocationHistoryEntry.recorded_at.asc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_technician_position(
    db: AsyncSession,
    technician_id: uuid.UUID,
    *,
    store: TechnicianLocationStore | None = None,
) -> TechnicianPosition:
    store = store if store is not None else SqlTechnicianLocationStore(db)
    position = await store.get_location(technician_id)
    if position is None:
        raise TechnicianNotFoundError(technician_id)
    return position
