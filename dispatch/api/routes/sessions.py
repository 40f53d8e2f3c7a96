"""
Service Session API Routes
==========================

Routes:
  POST  /api/v1/sessions                   -- Start tracking an accepted request
  GET   /api/v1/sessions/{id}              -- Read a session
  PATCH /api/v1/sessions/{id}/status       -- Pause / resume
  POST  /api/v1/sessions/{id}/end          -- Complete the session
  GET   /api/v1/sessions/{id}/history      -- Breadcrumb trail
"""

from __future__ import annotations

import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, HTTPException, Query, status

from dispatch.api.deps import CurrentPrincipal, DBSession
from dispatch.api.errors import raise_http_error
from dispatch.api.schemas.session import (
    HistoryEntryOut,
    SessionHistoryOut,
    SessionOut,
    SessionStart,
    SessionStatusUpdate,
)
from dispatch.core.exceptions import DispatchError
from dispatch.models.session import ServiceSession, SessionStatus
from dispatch.services import assignmentCoordinator, locationIngest, sessionLifecycle
from dispatch.services.auth_service import Principal

router = APIRouter(prefix="/sessions", tags=["Sessions"])


def _ensure_participant(session: ServiceSession, principal: Principal) -> None:
    if principal.is_admin:
        return
    if principal.user_id in (session.technician_id, session.client_id):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You are not a participant of this session.",
    )


@router.post(
    "",
    response_model=SessionOut,
    status_code=status.HTTP_201_CREATED,
    summary="Start a service session",
)
async def start_session(
    db: DBSession,
    principal: CurrentPrincipal,
    body: SessionStart,
) -> SessionOut:
    try:
        request = await assignmentCoordinator.get_request(db, body.service_request_id)
        if not principal.is_admin and principal.user_id not in (
            request.client_id,
            request.technician_id,
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You are not a party to this service request.",
            )
        if request.technician_id is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="The request has no assigned technician yet.",
            )
        session = await sessionLifecycle.start(
            db,
            request.id,
            request.technician_id,
            request.client_id,
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return SessionOut.model_validate(session)


@router.get(
    "/{session_id}",
    response_model=SessionOut,
    summary="Get a service session",
)
async def get_session(
    db: DBSession,
    principal: CurrentPrincipal,
    session_id: uuid.UUID,
) -> SessionOut:
    try:
        session = await sessionLifecycle.get_session(db, session_id)
    except DispatchError as exc:
        raise_http_error(exc)
    _ensure_participant(session, principal)
    return SessionOut.model_validate(session)


@router.patch(
    "/{session_id}/status",
    response_model=SessionOut,
    summary="Pause or resume a session",
)
async def set_session_status(
    db: DBSession,
    principal: CurrentPrincipal,
    session_id: uuid.UUID,
    body: SessionStatusUpdate,
) -> SessionOut:
    try:
        session = await sessionLifecycle.set_status(
            db,
            session_id,
            SessionStatus(body.status),
            actor_id=None if principal.is_admin else principal.user_id,
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return SessionOut.model_validate(session)


@router.post(
    "/{session_id}/end",
    response_model=SessionOut,
    summary="End a session",
)
async def end_session(
    db: DBSession,
    principal: CurrentPrincipal,
    session_id: uuid.UUID,
) -> SessionOut:
    try:
        session = await sessionLifecycle.end(
            db,
            session_id,
            actor_id=None if principal.is_admin else principal.user_id,
        )
    except DispatchError as exc:
        raise_http_error(exc)
    return SessionOut.model_validate(session)


@router.get(
    "/{session_id}/history",
    response_model=SessionHistoryOut,
    summary="Location history of a session",
)
async def get_session_history(
    db: DBSession,
    principal: CurrentPrincipal,
    session_id: uuid.UUID,
    limit: Annotated[Optional[int], Query(ge=1, le=5000)] = None,
) -> SessionHistoryOut:
    try:
        session = await sessionLifecycle.get_session(db, session_id)
        _ensure_participant(session, principal)
        entries = await locationIngest.get_history(db, session_id, limit=limit)
    except DispatchError as exc:
        raise_http_error(exc)
    return SessionHistoryOut(
        session_id=session_id,
        total=len(entries),
        points=[HistoryEntryOut.model_validate(e) for e in entries],
    )
