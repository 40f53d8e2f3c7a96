"""
Service Request API Routes
==========================

REST endpoints for the request lifecycle.  All state changes go through
``assignmentCoordinator``; this module only authorises the caller and maps
errors onto HTTP codes.

Routes:
  POST /api/v1/requests                      -- Create a pending request
  GET  /api/v1/requests/me                   -- Requests I created or work on
  GET  /api/v1/requests/available            -- Pending requests of my trade
  GET  /api/v1/requests/{id}                 -- Read one request
  POST /api/v1/requests/{id}/auto-assign     -- Assign nearest technician
  POST /api/v1/requests/{id}/accept          -- Manual claim
  POST /api/v1/requests/{id}/start           -- Technician starts work
  POST /api/v1/requests/{id}/cancel          -- Cancel (client/technician/admin)
  POST /api/v1/requests/{id}/complete        -- Complete with client's code
"""

from __future__ import annotations

import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, HTTPException, Query, status

from dispatch.api.deps import CurrentPrincipal, CurrentTechnician, DBSession
from dispatch.api.errors import raise_http_error
from dispatch.api.schemas.request import (
    AcceptRequest,
    AssignmentOut,
    AutoAssignRequest,
    AvailableRequestOut,
    CandidateOut,
    CompleteRequest,
    ServiceRequestCreate,
    ServiceRequestOut,
)
from dispatch.core.exceptions import DispatchError
from dispatch.models.service_request import ServiceRequest
from dispatch.models.user import UserRole
from dispatch.services import assignmentCoordinator
from dispatch.services.assignmentCoordinator import AssignmentResult
from dispatch.services.auth_service import Principal
from dispatch.services.requestStateManager import ActorType

router = APIRouter(prefix="/requests", tags=["Requests"])


def _assignment_out(result: AssignmentResult) -> AssignmentOut:
    return AssignmentOut(
        outcome=result.outcome,
        request_id=result.request_id,
        technician_id=result.technician_id,
        distance_km=result.distance_km,
        candidates=[
            CandidateOut(
                technician_id=c.technician_id,
                lat=c.lat,
                lng=c.lng,
                rating=c.rating,
                distance_km=c.distance_km,
            )
            for c in result.candidates
        ],
    )


def _ensure_party(request: ServiceRequest, principal: Principal) -> None:
    if principal.is_admin:
        return
    if principal.user_id in (request.client_id, request.technician_id):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You are not a party to this service request.",
    )


# ---------------------------------------------------------------------------
# POST /api/v1/requests -- Create a request
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=ServiceRequestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a service request",
)
async def create_request(
    db: DBSession,
    principal: CurrentPrincipal,
    body: ServiceRequestCreate,
) -> ServiceRequestOut:
    if principal.role == UserRole.TECHNICIAN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Technicians cannot create service requests.",
        )
    try:
        request = await assignmentCoordinator.create_request(
            db,
            principal.user_id,
            body.service_category,
            body.location_lat,
            body.location_lng,
            body.location_address,
            description=body.description,
            urgency=body.urgency,
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return ServiceRequestOut.model_validate(request)


# ---------------------------------------------------------------------------
# GET /api/v1/requests/me -- My requests
# ---------------------------------------------------------------------------

@router.get(
    "/me",
    response_model=list[ServiceRequestOut],
    summary="List requests I created or am assigned to",
)
async def list_my_requests(
    db: DBSession,
    principal: CurrentPrincipal,
) -> list[ServiceRequestOut]:
    requests = await assignmentCoordinator.get_requests_for_user(db, principal.user_id)
    return [ServiceRequestOut.model_validate(r) for r in requests]


# ---------------------------------------------------------------------------
# GET /api/v1/requests/available -- Technician feed
# ---------------------------------------------------------------------------

@router.get(
    "/available",
    response_model=list[AvailableRequestOut],
    summary="List pending requests of my trade, nearest first",
)
async def list_available_requests(
    db: DBSession,
    principal: CurrentTechnician,
    radius_km: Annotated[Optional[float], Query(gt=0, le=500)] = None,
) -> list[AvailableRequestOut]:
    try:
        nearby = await assignmentCoordinator.get_pending_requests_for_technician(
            db, principal.user_id, max_radius_km=radius_km
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return [
        AvailableRequestOut(
            request=ServiceRequestOut.model_validate(n.request),
            distance_km=n.distance_km,
        )
        for n in nearby
    ]


# ---------------------------------------------------------------------------
# GET /api/v1/requests/{id}
# ---------------------------------------------------------------------------

@router.get(
    "/{request_id}",
    response_model=ServiceRequestOut,
    summary="Get a service request",
)
async def get_request(
    db: DBSession,
    principal: CurrentPrincipal,
    request_id: uuid.UUID,
) -> ServiceRequestOut:
    try:
        request = await assignmentCoordinator.get_request(db, request_id)
    except DispatchError as exc:
        raise_http_error(exc)
    _ensure_party(request, principal)
    return ServiceRequestOut.model_validate(request)


# ---------------------------------------------------------------------------
# POST /api/v1/requests/{id}/auto-assign
# ---------------------------------------------------------------------------

@router.post(
    "/{request_id}/auto-assign",
    response_model=AssignmentOut,
    summary="Assign the nearest available technician",
    description=(
        "Searches available technicians of the request's trade within the "
        "radius, nearest first, and atomically claims the request for the "
        "closest one. Returns 'no_technicians_available' when nobody is in "
        "range and 'already_assigned' when a concurrent caller won; in both "
        "cases the ranked candidate list is included when known."
    ),
)
async def auto_assign(
    db: DBSession,
    principal: CurrentPrincipal,
    request_id: uuid.UUID,
    body: Optional[AutoAssignRequest] = None,
) -> AssignmentOut:
    body = body or AutoAssignRequest()
    try:
        request = await assignmentCoordinator.get_request(db, request_id)
        if not principal.is_admin and principal.user_id != request.client_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only the client or an admin can auto-assign this request.",
            )
        result = await assignmentCoordinator.auto_assign(
            db,
            request_id,
            body.lat,
            body.lng,
            max_radius_km=body.radius_km,
            max_results=body.max_results,
            actor_id=principal.user_id,
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return _assignment_out(result)


# ---------------------------------------------------------------------------
# POST /api/v1/requests/{id}/accept
# ---------------------------------------------------------------------------

@router.post(
    "/{request_id}/accept",
    response_model=AssignmentOut,
    summary="Manually claim a pending request",
)
async def accept_request(
    db: DBSession,
    principal: CurrentPrincipal,
    request_id: uuid.UUID,
    body: Optional[AcceptRequest] = None,
) -> AssignmentOut:
    body = body or AcceptRequest()
    if principal.is_admin:
        if body.technician_id is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="technician_id is required when an admin assigns a request.",
            )
        technician_id = body.technician_id
    elif principal.is_technician:
        technician_id = principal.user_id
    else:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only technicians or admins can accept requests.",
        )

    try:
        result = await assignmentCoordinator.accept_manually(
            db,
            request_id,
            technician_id,
            actor_id=principal.user_id,
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return _assignment_out(result)


# ---------------------------------------------------------------------------
# POST /api/v1/requests/{id}/start
# ---------------------------------------------------------------------------

@router.post(
    "/{request_id}/start",
    response_model=ServiceRequestOut,
    summary="Start work on an accepted request",
)
async def start_request(
    db: DBSession,
    principal: CurrentTechnician,
    request_id: uuid.UUID,
) -> ServiceRequestOut:
    try:
        request = await assignmentCoordinator.start_service(
            db, request_id, principal.user_id
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return ServiceRequestOut.model_validate(request)


# ---------------------------------------------------------------------------
# POST /api/v1/requests/{id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/{request_id}/cancel",
    response_model=ServiceRequestOut,
    summary="Cancel a pending or accepted request",
)
async def cancel_request(
    db: DBSession,
    principal: CurrentPrincipal,
    request_id: uuid.UUID,
) -> ServiceRequestOut:
    try:
        request = await assignmentCoordinator.cancel(
            db,
            request_id,
            principal.user_id,
            actor_type=ActorType.ADMIN if principal.is_admin else None,
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return ServiceRequestOut.model_validate(request)


# ---------------------------------------------------------------------------
# POST /api/v1/requests/{id}/complete
# ---------------------------------------------------------------------------

@router.post(
    "/{request_id}/complete",
    response_model=ServiceRequestOut,
    summary="Complete a request with the client's verification code",
)
async def complete_request(
    db: DBSession,
    principal: CurrentTechnician,
    request_id: uuid.UUID,
    body: CompleteRequest,
) -> ServiceRequestOut:
    try:
        request = await assignmentCoordinator.complete(
            db,
            request_id,
            principal.user_id,
            body.verification_code,
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return ServiceRequestOut.model_validate(request)
