"""
Assignment Coordinator
======================

Owns every status change of a service request: creation, automatic and
manual assignment, start of work, cancellation and verified completion.

Concurrency contract
--------------------
Handlers run concurrently in stateless processes, so the only thing that
serialises two callers is the database.  Every mutation here is ONE
conditional ``UPDATE ... WHERE id = :id AND status = :observed`` whose
rowcount tells us whether we won.  There is no read-then-write pair:

  - two auto-assign calls racing on the same pending request -> exactly one
    UPDATE matches, the other sees rowcount 0 and reports ``ALREADY_ASSIGNED``
  - a cancel racing an assignment -> whichever lands first wins, the loser
    gets ``InvalidTransitionError`` and must surface it, not retry blindly

A lost claim never falls through to the next candidate: the request can
only be claimed once, and the ranked list is returned for manual selection.

Key functions:
  - create_request   -- new pending request
  - get_pending_requests_for_technician
                     -- pending requests of my trade, nearest first
  - auto_assign      -- nearest available technician, claimed atomically
  - accept_manually  -- operator/technician chosen claim
  - start_service    -- accepted -> in_progress
  - cancel           -- pending|accepted -> cancelled (technician retained)
  - complete         -- accepted|in_progress -> completed with client code
"""

from __future__ import annotations

import enum
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.core.config import settings
from dispatch.core.exceptions import (
    ForbiddenActionError,
    InvalidSearchParametersError,
    InvalidTransitionError,
    InvalidVerificationError,
    MissingFieldError,
    RequestNotFoundError,
    RequestNotPendingError,
    TechnicianNotFoundError,
    TechnicianUnavailableError,
)
from dispatch.events.dispatchEvents import EventBus, emit_request_status_changed
from dispatch.models.service_request import (
    RequestStatus,
    ServiceCategory,
    ServiceRequest,
    Urgency,
)
from dispatch.models.session import SessionStatus
from dispatch.models.technician import AvailabilityStatus
from dispatch.models.user import User
from dispatch.services import sessionLifecycle
from dispatch.services.candidateFinder import Candidate, find_candidates
from dispatch.services.geoService import haversine_distance, validate_coordinate
from dispatch.services.locationStore import (
    SqlTechnicianLocationStore,
    TechnicianLocationStore,
)
from dispatch.services.requestStateManager import ActorType, validate_transition

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class AssignmentOutcome(str, enum.Enum):
    ASSIGNED = "assigned"
    NO_TECHNICIANS_AVAILABLE = "no_technicians_available"
    ALREADY_ASSIGNED = "already_assigned"


@dataclass(frozen=True)
class AssignmentResult:
    """Outcome of an assignment attempt.

    ``candidates`` carries the ranked list seen by ``auto_assign`` so callers
    can offer manual selection when the claim was lost or declined.
    """

    outcome: AssignmentOutcome
    request_id: uuid.UUID
    technician_id: uuid.UUID | None = None
    distance_km: float | None = None
    candidates: tuple[Candidate, ...] = field(default_factory=tuple)

    @property
    def assigned(self) -> bool:
        return self.outcome == AssignmentOutcome.ASSIGNED


@dataclass(frozen=True)
class NearbyRequest:
    """A pending request as seen from one technician."""

    request: ServiceRequest
    distance_km: float | None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

async def _load_request(db: AsyncSession, request_id: uuid.UUID) -> ServiceRequest:
    """Fetch a request, bypassing any stale copy in the identity map."""
    stmt = (
        select(ServiceRequest)
        .where(ServiceRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    request = result.scalar_one_or_none()
    if request is None:
        raise RequestNotFoundError(request_id)
    return request


async def _compare_and_set(
    db: AsyncSession,
    request_id: uuid.UUID,
    expected_status: RequestStatus,
    values: dict[str, Any],
    *,
    expected_technician_id: uuid.UUID | None = None,
) -> bool:
    """Apply ``values`` only if the row is still in ``expected_status``.

    This is the single atomic primitive every transition relies on.
    Returns True when exactly one row was updated.
    """
    conditions = [
        ServiceRequest.id == request_id,
        ServiceRequest.status == expected_status,
    ]
    if expected_technician_id is not None:
        conditions.append(ServiceRequest.technician_id == expected_technician_id)

    stmt = (
        update(ServiceRequest)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


def _store_for(db: AsyncSession, store: TechnicianLocationStore | None) -> TechnicianLocationStore:
    return store if store is not None else SqlTechnicianLocationStore(db)


def _request_origin(request: ServiceRequest) -> tuple[float, float]:
    return float(request.location_lat), float(request.location_lng)


def _resolve_actor(
    request: ServiceRequest,
    actor_id: uuid.UUID,
    actor_type: ActorType | None,
) -> ActorType:
    """Work out in which capacity ``actor_id`` is acting on ``request``."""
    if actor_type in (ActorType.ADMIN, ActorType.SYSTEM):
        return actor_type
    if actor_id == request.client_id:
        return ActorType.CLIENT
    if request.technician_id is not None and actor_id == request.technician_id:
        return ActorType.TECHNICIAN
    raise ForbiddenActionError(
        f"User '{actor_id}' is neither the client nor the assigned technician "
        f"of request '{request.id}'."
    )


async def _claim(
    db: AsyncSession,
    request: ServiceRequest,
    technician_id: uuid.UUID,
    distance_km: float | None,
    *,
    actor_id: uuid.UUID | None,
    candidates: Sequence[Candidate] = (),
    bus: EventBus | None,
) -> AssignmentResult:
    """Claim a pending request for ``technician_id`` (pending -> accepted)."""
    claimed = await _compare_and_set(
        db,
        request.id,
        RequestStatus.PENDING,
        {
            "status": RequestStatus.ACCEPTED,
            "technician_id": technician_id,
            "distance_km": (
                Decimal(str(round(distance_km, 3))) if distance_km is not None else None
            ),
            "assigned_at": datetime.now(timezone.utc),
        },
    )

    if not claimed:
        logger.info(
            "Claim of request %s for technician %s lost: request no longer pending",
            request.id,
            technician_id,
        )
        return AssignmentResult(
            outcome=AssignmentOutcome.ALREADY_ASSIGNED,
            request_id=request.id,
            candidates=tuple(candidates),
        )

    await emit_request_status_changed(
        request.id,
        RequestStatus.PENDING.value,
        RequestStatus.ACCEPTED.value,
        technician_id=technician_id,
        actor_id=actor_id,
        bus=bus,
        db=db,
    )
    logger.info(
        "Request %s assigned to technician %s (distance=%s km)",
        request.id,
        technician_id,
        f"{distance_km:.3f}" if distance_km is not None else "unknown",
    )
    return AssignmentResult(
        outcome=AssignmentOutcome.ASSIGNED,
        request_id=request.id,
        technician_id=technician_id,
        distance_km=distance_km,
        candidates=tuple(candidates),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def create_request(
    db: AsyncSession,
    client_id: uuid.UUID,
    category: ServiceCategory,
    lat: float,
    lng: float,
    address: str,
    *,
    description: str | None = None,
    urgency: Urgency = Urgency.MEDIUM,
    bus: EventBus | None = None,
) -> ServiceRequest:
    """Create a pending service request at a fixed location.

    Raises:
        InvalidCoordinateError: If the location is out of range.
        MissingFieldError: If the address is blank.
    """
    validate_coordinate(lat, lng)
    if not address or not address.strip():
        raise MissingFieldError("address")

    request = ServiceRequest(
        client_id=client_id,
        service_category=category,
        status=RequestStatus.PENDING,
        urgency=urgency,
        description=description,
        location_lat=Decimal(str(lat)),
        location_lng=Decimal(str(lng)),
        location_address=address.strip(),
    )
    db.add(request)
    await db.flush()

    await emit_request_status_changed(
        request.id,
        None,
        RequestStatus.PENDING.value,
        actor_id=client_id,
        bus=bus,
        db=db,
    )
    logger.info(
        "Request %s created by client %s (%s, urgency=%s)",
        request.id,
        client_id,
        category.value,
        urgency.value,
    )
    return request


async def get_request(db: AsyncSession, request_id: uuid.UUID) -> ServiceRequest:
    """Fetch a request or raise ``RequestNotFoundError``."""
    return await _load_request(db, request_id)


async def get_requests_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
) -> list[ServiceRequest]:
    """Requests the user created or is assigned to, newest first."""
    stmt = (
        select(ServiceRequest)
        .where(
            or_(
                ServiceRequest.client_id == user_id,
                ServiceRequest.technician_id == user_id,
            )
        )
        .order_by(ServiceRequest.created_at.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_pending_requests_for_technician(
    db: AsyncSession,
    technician_id: uuid.UUID,
    *,
    store: TechnicianLocationStore | None = None,
    max_radius_km: float | None = None,
) -> list[NearbyRequest]:
    """Pending requests of the technician's trade, nearest first.

    Distances are measured from the technician's last reported position and
    requests farther than the radius are left out.  Before the first position
    report every pending request of the trade is returned, oldest first,
    without a distance.

    Raises:
        TechnicianNotFoundError: If the technician has not registered a trade.
        InvalidSearchParametersError: If the radius is not positive.
    """
    radius = settings.search_radius_km if max_radius_km is None else max_radius_km
    if radius <= 0:
        raise InvalidSearchParametersError(f"max_radius_km must be positive, got {radius}.")

    position = await _store_for(db, store).get_location(technician_id)
    if position is None or position.service_category is None:
        raise TechnicianNotFoundError(technician_id)

    stmt = (
        select(ServiceRequest)
        .where(
            ServiceRequest.status == RequestStatus.PENDING,
            ServiceRequest.service_category == position.service_category,
        )
        .order_by(ServiceRequest.created_at, ServiceRequest.id)
    )
    result = await db.execute(stmt)
    requests = list(result.scalars().all())

    if not position.has_location:
        return [NearbyRequest(request=r, distance_km=None) for r in requests]

    nearby = []
    for request in requests:
        lat, lng = _request_origin(request)
        distance = haversine_distance(position.lat, position.lng, lat, lng)
        if distance <= radius:
            nearby.append(NearbyRequest(request=request, distance_km=round(distance, 3)))
    nearby.sort(key=lambda n: (n.distance_km, str(n.request.id)))

    logger.debug(
        "Technician %s sees %d of %d pending %s request(s) within %.1f km",
        technician_id,
        len(nearby),
        len(requests),
        position.service_category.value,
        radius,
    )
    return nearby


async def auto_assign(
    db: AsyncSession,
    request_id: uuid.UUID,
    lat: float | None = None,
    lng: float | None = None,
    *,
    store: TechnicianLocationStore | None = None,
    max_radius_km: float | None = None,
    max_results: int | None = None,
    actor_id: uuid.UUID | None = None,
    bus: EventBus | None = None,
) -> AssignmentResult:
    """Find the nearest available technician and claim the request for them.

    Args:
        db: Async database session.
        request_id: The pending request to assign.
        lat: Search origin latitude (defaults to the request location).
        lng: Search origin longitude (defaults to the request location).
        store: Location store override (defaults to the SQL store on ``db``).
        max_radius_km: Radius override; see ``find_candidates``.
        max_results: Candidate cap override; see ``find_candidates``.

    Returns:
        ``ASSIGNED`` with technician and distance, ``NO_TECHNICIANS_AVAILABLE``
        (request stays pending), or ``ALREADY_ASSIGNED`` if a concurrent
        caller claimed the request first.

    Raises:
        RequestNotFoundError: If the request does not exist.
        RequestNotPendingError: If the request is no longer pending.
        InvalidCoordinateError: If the supplied origin is out of range.
    """
    request = await _load_request(db, request_id)
    if request.status != RequestStatus.PENDING:
        raise RequestNotPendingError(request.id, request.status.value)

    if lat is None or lng is None:
        lat, lng = _request_origin(request)

    candidates = await find_candidates(
        _store_for(db, store),
        request.service_category,
        lat,
        lng,
        max_radius_km=max_radius_km,
        max_results=max_results,
    )

    if not candidates:
        logger.info(
            "No %s technicians available for request %s near (%.5f, %.5f)",
            request.service_category.value,
            request.id,
            lat,
            lng,
        )
        return AssignmentResult(
            outcome=AssignmentOutcome.NO_TECHNICIANS_AVAILABLE,
            request_id=request.id,
        )

    top = candidates[0]
    return await _claim(
        db,
        request,
        top.technician_id,
        top.distance_km,
        actor_id=actor_id,
        candidates=candidates,
        bus=bus,
    )


async def accept_manually(
    db: AsyncSession,
    request_id: uuid.UUID,
    technician_id: uuid.UUID,
    *,
    store: TechnicianLocationStore | None = None,
    actor_id: uuid.UUID | None = None,
    bus: EventBus | None = None,
) -> AssignmentResult:
    """Claim a pending request for a specific technician.

    The availability check is best effort: it reads the technician's record
    once and is not serialised against their concurrent location reports.
    The claim itself is the same atomic conditional update as ``auto_assign``.

    Raises:
        RequestNotFoundError: If the request does not exist.
        RequestNotPendingError: If the request is no longer pending.
        TechnicianUnavailableError: If the technician is unknown, of another
            trade, or not currently available.
    """
    request = await _load_request(db, request_id)
    if request.status != RequestStatus.PENDING:
        raise RequestNotPendingError(request.id, request.status.value)

    position = await _store_for(db, store).get_location(technician_id)
    if position is None:
        raise TechnicianUnavailableError(technician_id, "no technician record")
    if position.service_category != request.service_category:
        raise TechnicianUnavailableError(
            technician_id,
            f"does not provide '{request.service_category.value}' service",
        )
    if position.availability_status != AvailabilityStatus.AVAILABLE:
        raise TechnicianUnavailableError(
            technician_id,
            f"status is '{position.availability_status.value}'",
        )

    distance: float | None = None
    if position.has_location:
        req_lat, req_lng = _request_origin(request)
        distance = haversine_distance(req_lat, req_lng, position.lat, position.lng)

    return await _claim(
        db,
        request,
        technician_id,
        distance,
        actor_id=actor_id if actor_id is not None else technician_id,
        bus=bus,
    )


async def start_service(
    db: AsyncSession,
    request_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    bus: EventBus | None = None,
) -> ServiceRequest:
    """Mark work as started (accepted -> in_progress) by the assigned technician."""
    request = await _load_request(db, request_id)
    if request.technician_id is None or actor_id != request.technician_id:
        raise ForbiddenActionError(
            f"Only the assigned technician can start request '{request.id}'."
        )

    previous = request.status
    check = validate_transition(previous, RequestStatus.IN_PROGRESS, ActorType.TECHNICIAN)
    if not check.allowed:
        raise InvalidTransitionError(check.reason or "Transition not allowed.")

    applied = await _compare_and_set(
        db,
        request.id,
        previous,
        {
            "status": RequestStatus.IN_PROGRESS,
            "started_at": datetime.now(timezone.utc),
        },
        expected_technician_id=actor_id,
    )
    if not applied:
        raise InvalidTransitionError(
            f"Request '{request.id}' changed while starting work; reload and retry."
        )

    await emit_request_status_changed(
        request.id,
        previous.value,
        RequestStatus.IN_PROGRESS.value,
        technician_id=actor_id,
        actor_id=actor_id,
        bus=bus,
        db=db,
    )
    logger.info("Request %s in progress (technician=%s)", request.id, actor_id)
    return await _load_request(db, request.id)


async def cancel(
    db: AsyncSession,
    request_id: uuid.UUID,
    actor_id: uuid.UUID,
    *,
    actor_type: ActorType | None = None,
    bus: EventBus | None = None,
) -> ServiceRequest:
    """Cancel a pending or accepted request.

    The assigned technician (if any) is kept on the request as history.  An
    open service session for the request is cancelled as well.

    Raises:
        RequestNotFoundError: If the request does not exist.
        ForbiddenActionError: If the actor is not a party to the request.
        InvalidTransitionError: If the request is past ``accepted`` or
            changed concurrently.
    """
    request = await _load_request(db, request_id)
    actor = _resolve_actor(request, actor_id, actor_type)

    previous = request.status
    check = validate_transition(previous, RequestStatus.CANCELLED, actor)
    if not check.allowed:
        raise InvalidTransitionError(check.reason or "Cancellation not allowed.")

    applied = await _compare_and_set(
        db,
        request.id,
        previous,
        {
            "status": RequestStatus.CANCELLED,
            "cancelled_at": datetime.now(timezone.utc),
        },
    )
    if not applied:
        current = await _load_request(db, request.id)
        raise InvalidTransitionError(
            f"Request '{request.id}' moved from '{previous.value}' to "
            f"'{current.status.value}' before it could be cancelled."
        )

    await sessionLifecycle.close_open_sessions(
        db, request.id, SessionStatus.CANCELLED, bus=bus
    )
    await emit_request_status_changed(
        request.id,
        previous.value,
        RequestStatus.CANCELLED.value,
        technician_id=request.technician_id,
        actor_id=actor_id,
        bus=bus,
        db=db,
    )
    logger.info(
        "Request %s cancelled from '%s' by %s (%s)",
        request.id,
        previous.value,
        actor_id,
        actor.value,
    )
    return await _load_request(db, request.id)


def _codes_match(expected: Optional[str], submitted: str) -> bool:
    if not expected:
        return False
    return secrets.compare_digest(
        expected.strip().upper().encode(),
        submitted.strip().upper().encode(),
    )


async def complete(
    db: AsyncSession,
    request_id: uuid.UUID,
    actor_id: uuid.UUID,
    verification_code: str,
    *,
    bus: EventBus | None = None,
) -> ServiceRequest:
    """Complete a request on site, proven by the client's personal code.

    A wrong code changes nothing and may be retried.  On success any open
    session for the request is ended.

    Raises:
        RequestNotFoundError: If the request does not exist.
        InvalidTransitionError: If the request is not accepted/in progress.
        ForbiddenActionError: If the actor is not the assigned technician.
        InvalidVerificationError: If the code does not match the client's.
    """
    request = await _load_request(db, request_id)
    previous = request.status

    check = validate_transition(previous, RequestStatus.COMPLETED, ActorType.TECHNICIAN)
    if not check.allowed:
        raise InvalidTransitionError(check.reason or "Completion not allowed.")
    if request.technician_id is None or actor_id != request.technician_id:
        raise ForbiddenActionError(
            f"Only the assigned technician can complete request '{request.id}'."
        )

    client = await db.get(User, request.client_id)
    if client is None or not _codes_match(client.verification_code, verification_code):
        logger.info("Verification code mismatch for request %s", request.id)
        raise InvalidVerificationError(request.id)

    applied = await _compare_and_set(
        db,
        request.id,
        previous,
        {
            "status": RequestStatus.COMPLETED,
            "completed_at": datetime.now(timezone.utc),
        },
        expected_technician_id=actor_id,
    )
    if not applied:
        raise InvalidTransitionError(
            f"Request '{request.id}' changed while completing; reload and retry."
        )

    await sessionLifecycle.close_open_sessions(
        db, request.id, SessionStatus.COMPLETED, bus=bus
    )
    await emit_request_status_changed(
        request.id,
        previous.value,
        RequestStatus.COMPLETED.value,
        technician_id=actor_id,
        actor_id=actor_id,
        bus=bus,
        db=db,
    )
    logger.info("Request %s completed by technician %s", request.id, actor_id)
    return await _load_request(db, request.id)
