"""
Location API Routes
===================

Routes:
  POST /api/v1/location                      -- Technician position report
  GET  /api/v1/location/technicians/{id}     -- Latest stored position
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter

from dispatch.api.deps import CurrentPrincipal, CurrentTechnician, DBSession
from dispatch.api.errors import raise_http_error
from dispatch.api.schemas.location import (
    LocationReport,
    LocationReportOut,
    TechnicianPositionOut,
)
from dispatch.core.exceptions import DispatchError
from dispatch.services import locationIngest

router = APIRouter(prefix="/location", tags=["Location"])


@router.post(
    "",
    response_model=LocationReportOut,
    summary="Report my current position",
    description=(
        "Updates the live position unless a newer report is already stored "
        "(applied=false). When session_id refers to an active session the "
        "point is also appended to that session's history."
    ),
)
async def report_location(
    db: DBSession,
    principal: CurrentTechnician,
    body: LocationReport,
) -> LocationReportOut:
    try:
        result = await locationIngest.report_location(
            db,
            principal.user_id,
            body.lat,
            body.lng,
            accuracy=body.accuracy,
            heading=body.heading,
            speed=body.speed,
            session_id=body.session_id,
            availability=body.availability_status,
            reported_at=body.reported_at,
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return LocationReportOut.model_validate(result)


@router.get(
    "/technicians/{technician_id}",
    response_model=TechnicianPositionOut,
    summary="Get a technician's latest position",
)
async def get_technician_location(
    db: DBSession,
    principal: CurrentPrincipal,
    technician_id: uuid.UUID,
) -> TechnicianPositionOut:
    try:
        position = await locationIngest.get_technician_position(db, technician_id)
    except DispatchError as exc:
        raise_http_error(exc)
    return TechnicianPositionOut.model_validate(position)
