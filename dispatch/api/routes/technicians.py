"""
Technician Profile API Routes
=============================

Routes:
  POST /api/v1/technicians/me/register      -- Declare trade (and rating)
  PUT  /api/v1/technicians/me/availability  -- Go available / busy / offline
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

from dispatch.api.deps import CurrentTechnician, DBSession
from dispatch.api.schemas.location import (
    AvailabilityOut,
    AvailabilityUpdate,
    TechnicianPositionOut,
    TechnicianRegister,
)
from dispatch.services.locationStore import SqlTechnicianLocationStore

router = APIRouter(prefix="/technicians", tags=["Technicians"])


@router.post(
    "/me/register",
    response_model=TechnicianPositionOut,
    summary="Register or update my trade",
)
async def register_me(
    db: DBSession,
    principal: CurrentTechnician,
    body: TechnicianRegister,
) -> TechnicianPositionOut:
    store = SqlTechnicianLocationStore(db)
    position = await store.register_technician(
        principal.user_id,
        body.service_category,
        rating=body.rating,
    )
    return TechnicianPositionOut.model_validate(position)


@router.put(
    "/me/availability",
    response_model=AvailabilityOut,
    summary="Set my availability",
    description=(
        "Availability changes follow the same report-time ordering as "
        "location reports: a toggle older than the stored report is ignored."
    ),
)
async def set_my_availability(
    db: DBSession,
    principal: CurrentTechnician,
    body: AvailabilityUpdate,
) -> AvailabilityOut:
    store = SqlTechnicianLocationStore(db)
    applied = await store.set_availability(
        principal.user_id,
        body.availability_status,
        reported_at=body.reported_at or datetime.now(timezone.utc),
    )
    return AvailabilityOut(
        technician_id=principal.user_id,
        availability_status=body.availability_status,
        applied=applied,
    )
