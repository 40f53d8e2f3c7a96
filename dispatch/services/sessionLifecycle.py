"""
Session Lifecycle
=================

Tracks the engagement between a client and the technician assigned to their
request, and gates whether location reports are kept as history.

State machine::

    active <--> paused
       |          |
       +----+-----+
            v
    completed | cancelled      (terminal, ended_at set)

At most one open (active or paused) session exists per request.  The
pre-check in ``start`` gives a friendly error; the partial unique index on
``service_sessions`` is what actually holds under concurrent starts.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.core.exceptions import (
    ForbiddenActionError,
    InvalidTransitionError,
    RequestNotFoundError,
    SessionAlreadyActiveError,
    SessionNotFoundError,
)
from dispatch.events.dispatchEvents import EventBus, emit_session_status_changed
from dispatch.models.service_request import RequestStatus, ServiceRequest
from dispatch.models.session import (
    OPEN_SESSION_STATUSES,
    ServiceSession,
    SessionStatus,
)

logger = logging.getLogger(__name__)

SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.PAUSED: frozenset({
        SessionStatus.ACTIVE,
        SessionStatus.COMPLETED,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

# Request statuses in which work can be tracked
_TRACKABLE_REQUEST_STATUSES = (RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_session(db: AsyncSession, session_id: uuid.UUID) -> ServiceSession:
    stmt = (
        select(ServiceSession)
        .where(ServiceSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    session = result.scalar_one_or_none()
    if session is None:
        raise SessionNotFoundError(session_id)
    return session


async def get_open_session_for_request(
    db: AsyncSession,
    request_id: uuid.UUID,
) -> Optional[ServiceSession]:
    stmt = (
        select(ServiceSession)
        .where(
            ServiceSession.service_request_id == request_id,
            ServiceSession.status.in_(OPEN_SESSION_STATUSES),
        )
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


def _check_participant(session: ServiceSession, actor_id: uuid.UUID | None) -> None:
    if actor_id is None:
        return
    if actor_id not in (session.technician_id, session.client_id):
        raise ForbiddenActionError(
            f"User '{actor_id}' is not a participant of session '{session.id}'."
        )


async def _compare_and_set(
    db: AsyncSession,
    session_id: uuid.UUID,
    expected: frozenset[SessionStatus] | set[SessionStatus],
    values: dict,
) -> bool:
    stmt = (
        update(ServiceSession)
        .where(
            ServiceSession.id == session_id,
            ServiceSession.status.in_(expected),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def start(
    db: AsyncSession,
    request_id: uuid.UUID,
    technician_id: uuid.UUID,
    client_id: uuid.UUID,
    *,
    bus: EventBus | None = None,
) -> ServiceSession:
    """Open an active session for an accepted or in-progress request.

    Raises:
        RequestNotFoundError: If the request does not exist.
        InvalidTransitionError: If the request is not accepted/in progress.
        ForbiddenActionError: If technician or client do not match the request.
        SessionAlreadyActiveError: If the request already has an open session.
    """
    stmt = (
        select(ServiceRequest)
        .where(ServiceRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    request = (await db.execute(stmt)).scalar_one_or_none()
    if request is None:
        raise RequestNotFoundError(request_id)

    if request.status not in _TRACKABLE_REQUEST_STATUSES:
        raise InvalidTransitionError(
            f"Cannot start a session for request '{request_id}' in status "
            f"'{request.status.value}'; it must be accepted or in progress."
        )
    if request.technician_id != technician_id or request.client_id != client_id:
        raise ForbiddenActionError(
            f"Session participants do not match request '{request_id}'."
        )

    if await get_open_session_for_request(db, request_id) is not None:
        raise SessionAlreadyActiveError(request_id)

    session = ServiceSession(
        service_request_id=request_id,
        technician_id=technician_id,
        client_id=client_id,
        status=SessionStatus.ACTIVE,
        started_at=datetime.now(timezone.utc),
    )
    db.add(session)
    try:
        await db.flush()
    except IntegrityError as exc:
        # Lost the race to a concurrent start; the open-session index fired.
        logger.info("Concurrent session start rejected for request %s", request_id)
        raise SessionAlreadyActiveError(request_id) from exc

    await emit_session_status_changed(
        session.id,
        request_id,
        None,
        SessionStatus.ACTIVE.value,
        technician_id=technician_id,
        bus=bus,
        db=db,
    )
    logger.info(
        "Session %s started for request %s (technician=%s)",
        session.id,
        request_id,
        technician_id,
    )
    return session


async def set_status(
    db: AsyncSession,
    session_id: uuid.UUID,
    status: SessionStatus,
    *,
    actor_id: uuid.UUID | None = None,
    bus: EventBus | None = None,
) -> ServiceSession:
    """Pause or resume a session.  Setting the current status is a no-op."""
    if status not in OPEN_SESSION_STATUSES:
        raise InvalidTransitionError(
            f"set_status only toggles between active and paused, got '{status.value}'."
        )

    session = await get_session(db, session_id)
    _check_participant(session, actor_id)

    previous = session.status
    if previous == status:
        return session
    if status not in SESSION_TRANSITIONS[previous]:
        raise InvalidTransitionError(
            f"Session '{session_id}' is '{previous.value}' and cannot become "
            f"'{status.value}'."
        )

    applied = await _compare_and_set(db, session_id, {previous}, {"status": status})
    if not applied:
        session = await get_session(db, session_id)
        if session.status == status:
            return session
        raise InvalidTransitionError(
            f"Session '{session_id}' moved to '{session.status.value}' concurrently."
        )

    await emit_session_status_changed(
        session_id,
        session.service_request_id,
        previous.value,
        status.value,
        technician_id=session.technician_id,
        bus=bus,
        db=db,
    )
    logger.info("Session %s: %s -> %s", session_id, previous.value, status.value)
    return await get_session(db, session_id)


async def _close(
    db: AsyncSession,
    session: ServiceSession,
    final_status: SessionStatus,
    *,
    bus: EventBus | None,
) -> bool:
    previous = session.status
    applied = await _compare_and_set(
        db,
        session.id,
        OPEN_SESSION_STATUSES,
        {"status": final_status, "ended_at": datetime.now(timezone.utc)},
    )
    if not applied:
        return False

    await emit_session_status_changed(
        session.id,
        session.service_request_id,
        previous.value,
        final_status.value,
        technician_id=session.technician_id,
        bus=bus,
        db=db,
    )
    logger.info("Session %s %s", session.id, final_status.value)
    return True


async def end(
    db: AsyncSession,
    session_id: uuid.UUID,
    *,
    actor_id: uuid.UUID | None = None,
    bus: EventBus | None = None,
) -> ServiceSession:
    """Mark a session completed and stamp ``ended_at``."""
    session = await get_session(db, session_id)
    _check_participant(session, actor_id)
    if not await _close(db, session, SessionStatus.COMPLETED, bus=bus):
        current = await get_session(db, session_id)
        raise InvalidTransitionError(
            f"Session '{session_id}' is already '{current.status.value}'."
        )
    return await get_session(db, session_id)


async def cancel(
    db: AsyncSession,
    session_id: uuid.UUID,
    *,
    actor_id: uuid.UUID | None = None,
    bus: EventBus | None = None,
) -> ServiceSession:
    """Mark a session cancelled and stamp ``ended_at``."""
    session = await get_session(db, session_id)
    _check_participant(session, actor_id)
    if not await _close(db, session, SessionStatus.CANCELLED, bus=bus):
        current = await get_session(db, session_id)
        raise InvalidTransitionError(
            f"Session '{session_id}' is already '{current.status.value}'."
        )
    return await get_session(db, session_id)


async def close_open_sessions(
    db: AsyncSession,
    request_id: uuid.UUID,
    final_status: SessionStatus,
    *,
    bus: EventBus | None = None,
) -> Optional[ServiceSession]:
    """Close the request's open session, if any, when the request terminates."""
    session = await get_open_session_for_request(db, request_id)
    if session is None:
        return None
    if not await _close(db, session, final_status, bus=bus):
        return None
    return await get_session(db, session.id)
