"""
Location Tracking Handler
=========================

Socket.IO entry point for technician position reports, for apps that keep a
socket open instead of calling ``POST /location``.

  - Technician emits ``location:update`` with GPS data (optionally a
    ``session_id``)
  - Updates are throttled to one per ``THROTTLE_INTERVAL_SECONDS`` per
    technician using a Redis key with TTL
  - The payload is validated with the ``LocationReport`` schema of the REST
    endpoint and goes through ``locationIngest.report_location`` exactly like
    ``POST /location`` (staleness guard, history only while the session is
    active)
  - When the report belongs to a session and was applied, the request room
    receives ``location:technician_moved`` with a straight-line ETA

Redis keys:
  - ``dispatch:loc:throttle:{technician_id}``   Throttle flag (TTL)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from pydantic import ValidationError

from dispatch.api.schemas.location import LocationReport
from dispatch.core.exceptions import DispatchError
from dispatch.models.service_request import ServiceRequest
from dispatch.services import locationIngest, sessionLifecycle
from dispatch.services.geoService import haversine_distance

from ..socketServer import broadcast_to_request, get_redis, get_sid_principal, sio

logger = logging.getLogger(__name__)

# Minimum interval between socket location updates per technician (seconds)
THROTTLE_INTERVAL_SECONDS: int = 3

_THROTTLE_PREFIX: str = "dispatch:loc:throttle:"

# Average travel speed for ETA estimation (km/h)
_AVG_SPEED_KMH: float = 30.0


async def _acquire_throttle(technician_id: uuid.UUID) -> bool:
    """Set the throttle flag; False if one is already set."""
    redis = await get_redis()
    acquired = await redis.set(
        f"{_THROTTLE_PREFIX}{technician_id}",
        "1",
        ex=THROTTLE_INTERVAL_SECONDS,
        nx=True,
    )
    return bool(acquired)


def estimate_eta_minutes(
    technician_lat: float,
    technician_lng: float,
    destination_lat: float,
    destination_lng: float,
    speed_kmh: float = _AVG_SPEED_KMH,
) -> int:
    """Straight-line travel time in whole minutes (minimum 1)."""
    distance_km = haversine_distance(
        technician_lat, technician_lng,
        destination_lat, destination_lng,
    )
    if speed_kmh <= 0:
        return 1
    return max(1, int(distance_km / speed_kmh * 60))

@sio.on("location:update")
async def handle_location_update(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Process a location update from a technician.

    Payload (same schema as ``POST /location``): {
        "lat": <float>,
        "lng": <float>,
        "heading": <float | null>,      # degrees, [0, 360)
        "speed": <float | null>,        # m/s, >= 0
        "accuracy": <float | null>,     # meters, >= 0
        "session_id": "<uuid | null>",
        "timestamp": "<iso string>"     # device time, alias of reported_at
    }
    """
    principal = get_sid_principal(sid)
    if principal is None:
        return {"ok": False, "error": "Not authenticated"}
    if not principal.is_technician:
        return {"ok": False, "error": "Only technicians can send location updates"}

    try:
        report = LocationReport.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "Malformed location payload from technician %s: %d error(s)",
            principal.user_id,
            exc.error_count(),
        )
        return {"ok": False, "error": "Malformed location payload"}

    if not await _acquire_throttle(principal.user_id):
        return {
            "ok": False,
            "error": "Rate limited",
            "retry_after_seconds": THROTTLE_INTERVAL_SECONDS,
        }

    from dispatch.api.deps import session_scope

    eta_minutes: int | None = None
    request_id: uuid.UUID | None = None
    try:
        async with session_scope() as db:
            result = await locationIngest.report_location(
                db,
                principal.user_id,
                report.lat,
                report.lng,
                accuracy=report.accuracy,
                heading=report.heading,
                speed=report.speed,
                session_id=report.session_id,
                availability=report.availability_status,
                reported_at=report.reported_at,
            )
            if report.session_id is not None and result.applied:
                session = await sessionLifecycle.get_session(db, report.session_id)
                request = await db.get(ServiceRequest, session.service_request_id)
                if request is not None:
                    request_id = request.id
                    eta_minutes = estimate_eta_minutes(
                        report.lat,
                        report.lng,
                        float(request.location_lat),
                        float(request.location_lng),
                    )
    except DispatchError as exc:
        return {"ok": False, "error": str(exc)}

    if request_id is not None:
        await broadcast_to_request(
            request_id,
            "location:technician_moved",
            {
                "technician_id": str(principal.user_id),
                "lat": report.lat,
                "lng": report.lng,
                "heading": report.heading,
                "speed": report.speed,
                "eta_minutes": eta_minutes,
                "reported_at": result.reported_at.isoformat(),
            },
            skip_sid=sid,
        )

    return {
        "ok": True,
        "applied": result.applied,
        "history_recorded": result.history_recorded,
        "eta_minutes": eta_minutes,
    }
