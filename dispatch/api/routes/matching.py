"""
Matching API Routes
===================

Read-only nearest-technician search, used by operators and clients to pick a
technician manually.

Routes:
  GET /api/v1/matching/candidates -- Ranked available technicians near a point
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Query

from dispatch.api.deps import CurrentPrincipal, DBSession
from dispatch.api.errors import raise_http_error
from dispatch.api.schemas.matching import CandidateListOut
from dispatch.api.schemas.request import CandidateOut
from dispatch.core.config import settings
from dispatch.core.exceptions import DispatchError
from dispatch.models.service_request import ServiceCategory
from dispatch.services.candidateFinder import find_candidates
from dispatch.services.locationStore import SqlTechnicianLocationStore

router = APIRouter(prefix="/matching", tags=["Matching"])


@router.get(
    "/candidates",
    response_model=CandidateListOut,
    summary="Find available technicians near a location",
    description=(
        "Returns available technicians of the given trade within the radius, "
        "sorted by haversine distance (ties by technician id) and capped at "
        "max_results. An empty list is a normal answer."
    ),
)
async def list_candidates(
    db: DBSession,
    principal: CurrentPrincipal,
    service_category: ServiceCategory,
    lat: Annotated[float, Query(ge=-90, le=90)],
    lng: Annotated[float, Query(ge=-180, le=180)],
    radius_km: Annotated[Optional[float], Query(gt=0, le=500)] = None,
    max_results: Annotated[Optional[int], Query(ge=1, le=50)] = None,
) -> CandidateListOut:
    radius = radius_km if radius_km is not None else settings.search_radius_km
    limit = max_results if max_results is not None else settings.max_candidates
    try:
        candidates = await find_candidates(
            SqlTechnicianLocationStore(db),
            service_category,
            lat,
            lng,
            max_radius_km=radius,
            max_results=limit,
        )
    except DispatchError as exc:
        raise_http_error(exc)

    return CandidateListOut(
        service_category=service_category,
        origin_lat=lat,
        origin_lng=lng,
        radius_km=radius,
        max_results=limit,
        total=len(candidates),
        candidates=[
            CandidateOut(
                technician_id=c.technician_id,
                lat=c.lat,
                lng=c.lng,
                rating=c.rating,
                distance_km=c.distance_km,
            )
            for c in candidates
        ],
    )
