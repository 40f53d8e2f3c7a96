"""
WebSocket Server
================

Socket.IO server that pushes dispatch events to the apps in real time.

Architecture:
  - python-socketio AsyncServer mounted as ASGI app on FastAPI at ``/ws``
  - Redis client manager so every API instance can emit to every socket
  - JWT authentication on connect (same tokens as the REST API)
  - Room-based routing:
      ``request_<request_id>``       -- client and technician of a request
      ``technician_<user_id>``       -- a technician's personal room
      ``<role>_<user_id>``           -- every user's personal room

Connection lifecycle:
  1. Client connects with ``auth: { token: "<jwt>" }``
  2. Server decodes the token and joins the personal room(s)
  3. Client joins request rooms via ``join_request`` (parties only)
  4. On disconnect the connection registry entry is dropped

The event bridge (``install_event_bridge``) subscribes to the in-process
``EventBus`` and forwards every request/session transition to the
matching rooms as ``<entity>.status_changed``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

import socketio
from redis.asyncio import Redis

from dispatch.core.config import settings
from dispatch.events.dispatchEvents import EventBus, TransitionEvent, event_bus
from dispatch.models.user import UserRole
from dispatch.services import auth_service
from dispatch.services.auth_service import Principal

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Socket.IO server instance
# ---------------------------------------------------------------------------

# Client manager backed by Redis for horizontal scaling
client_manager = socketio.AsyncRedisManager(
    settings.redis_url,
    write_only=False,
)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.ws_cors_allowed_origins,
    client_manager=client_manager,
    logger=False,
    engineio_logger=False,
    ping_timeout=settings.ws_ping_timeout,
    ping_interval=settings.ws_ping_interval,
    max_http_buffer_size=1_000_000,
)


def request_room(request_id: uuid.UUID | str) -> str:
    return f"request_{request_id}"


def technician_room(technician_id: uuid.UUID | str) -> str:
    return f"technician_{technician_id}"


# ---------------------------------------------------------------------------
# Connection registry: sid -> principal
# ---------------------------------------------------------------------------

_sid_principals: dict[str, Principal] = {}


def get_sid_principal(sid: str) -> Principal | None:
    return _sid_principals.get(sid)


# ---------------------------------------------------------------------------
# JWT authentication helper
# ---------------------------------------------------------------------------

def _authenticate_token(token: str | None) -> Principal | None:
    """Decode a JWT into a principal, or None on failure."""
    if not token:
        return None
    try:
        return auth_service.principal_from_token(token)
    except ValueError as exc:
        logger.warning("Socket authentication failed: %s", exc)
        return None


# ---------------------------------------------------------------------------
# Connect / disconnect
# ---------------------------------------------------------------------------

@sio.event
async def connect(sid: str, environ: dict[str, Any], auth: dict[str, Any] | None = None) -> bool:
    """Authenticate the connection and join the user's personal rooms.

    Returns ``False`` to reject unauthenticated connections.
    """
    principal = _authenticate_token((auth or {}).get("token"))
    if principal is None:
        logger.info("Connection rejected for sid=%s -- authentication failed", sid)
        return False

    _sid_principals[sid] = principal
    if principal.role == UserRole.TECHNICIAN:
        await sio.enter_room(sid, technician_room(principal.user_id))
    else:
        await sio.enter_room(sid, f"{principal.role.value}_{principal.user_id}")

    logger.info(
        "Connected: sid=%s user_id=%s role=%s",
        sid,
        principal.user_id,
        principal.role.value,
    )
    return True


@sio.event
async def disconnect(sid: str) -> None:
    principal = _sid_principals.pop(sid, None)
    logger.info(
        "Disconnected: sid=%s user_id=%s",
        sid,
        principal.user_id if principal else None,
    )


# ---------------------------------------------------------------------------
# Room management events (client-initiated)
# ---------------------------------------------------------------------------

async def _is_party(principal: Principal, request_id: uuid.UUID) -> bool:
    if principal.is_admin:
        return True

    from dispatch.api.deps import async_session_factory
    from dispatch.models.service_request import ServiceRequest

    async with async_session_factory() as db:
        request = await db.get(ServiceRequest, request_id)
    if request is None:
        return False
    return principal.user_id in (request.client_id, request.technician_id)


@sio.on("join_request")
async def handle_join_request(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Join the room of a request the caller is a party to.

    Payload: { "request_id": "<uuid>" }
    """
    principal = get_sid_principal(sid)
    if principal is None:
        return {"ok": False, "error": "Not authenticated"}

    try:
        request_id = uuid.UUID(str(data.get("request_id")))
    except ValueError:
        return {"ok": False, "error": "request_id must be a UUID"}

    if not await _is_party(principal, request_id):
        return {"ok": False, "error": "Not a party to this request"}

    room = request_room(request_id)
    await sio.enter_room(sid, room)
    logger.info("sid=%s joined room %s", sid, room)
    return {"ok": True, "room": room}


@sio.on("leave_request")
async def handle_leave_request(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    request_id = data.get("request_id")
    if not request_id:
        return {"ok": False, "error": "request_id is required"}
    room = request_room(request_id)
    await sio.leave_room(sid, room)
    logger.info("sid=%s left room %s", sid, room)
    return {"ok": True, "room": room}


# ---------------------------------------------------------------------------
# Broadcast helpers
# ---------------------------------------------------------------------------

async def broadcast_to_request(
    request_id: uuid.UUID | str,
    event: str,
    data: dict[str, Any],
    *,
    skip_sid: str | None = None,
) -> None:
    """Send an event to every client in the request room."""
    room = request_room(request_id)
    await sio.emit(event, data, room=room, skip_sid=skip_sid)
    logger.debug("Broadcast %s to room=%s", event, room)


async def send_to_technician(
    technician_id: uuid.UUID | str,
    event: str,
    data: dict[str, Any],
) -> None:
    room = technician_room(technician_id)
    await sio.emit(event, data, room=room)
    logger.debug("Sent %s to room=%s", event, room)


async def forward_transition_event(event: TransitionEvent) -> None:
    """Relay a dispatch transition to the request and technician rooms."""
    payload = event.to_dict()
    await broadcast_to_request(event.request_id, event.event_type, payload)
    if event.technician_id is not None:
        await send_to_technician(event.technician_id, event.event_type, payload)


def install_event_bridge(bus: EventBus | None = None) -> Callable[[], None]:
    """Forward every event published on ``bus`` to Socket.IO rooms.

    Returns the unsubscribe callable; call it on shutdown.
    """
    unsubscribe = (bus or event_bus).subscribe_all(forward_transition_event)
    logger.info("Socket.IO event bridge installed")
    return unsubscribe


# ---------------------------------------------------------------------------
# Redis helper for direct key/value operations (throttling)
# ---------------------------------------------------------------------------

_redis_client: Redis | None = None


async def get_redis() -> Redis:
    """Return a shared async Redis client, creating it lazily."""
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(
            settings.redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close the shared Redis client.  Call on app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


# ---------------------------------------------------------------------------
# ASGI app for mounting onto FastAPI
# ---------------------------------------------------------------------------

socket_app = socketio.ASGIApp(
    socketio_server=sio,
    socketio_path="/ws/socket.io",
)
