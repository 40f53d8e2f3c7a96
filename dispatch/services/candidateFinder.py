"""
Candidate Finder
================

Single authoritative nearest-technician search used by auto-assignment, the
manual-selection list and the matching endpoint.

Pipeline:
  1. Fetch every *available* technician of the requested trade that has a
     known position (``TechnicianLocationStore.get_available_by_category``)
  2. Compute haversine distance from the origin
  3. Drop anyone farther than ``max_radius_km`` (exactly on the radius is kept)
  4. Sort by distance, ties broken by technician id for determinism
  5. Truncate to ``max_results``

An empty result is a normal outcome, not an error.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from dispatch.core.config import settings
from dispatch.core.exceptions import InvalidSearchParametersError
from dispatch.models.service_request import ServiceCategory
from dispatch.services.geoService import haversine_distance, validate_coordinate
from dispatch.services.locationStore import TechnicianLocationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """A technician annotated with distance from the request location."""

    technician_id: uuid.UUID
    lat: float
    lng: float
    rating: float
    distance_km: float

    @property
    def sort_key(self) -> tuple[float, str]:
        return (self.distance_km, str(self.technician_id))


async def find_candidates(
    store: TechnicianLocationStore,
    category: ServiceCategory,
    origin_lat: float,
    origin_lng: float,
    *,
    max_radius_km: float | None = None,
    max_results: int | None = None,
) -> list[Candidate]:
    """Return up to ``max_results`` available technicians nearest the origin.

    Args:
        store: Location store to read technicians from.
        category: Trade the request needs.
        origin_lat: Request latitude.
        origin_lng: Request longitude.
        max_radius_km: Search radius; defaults to ``settings.search_radius_km``.
        max_results: Result cap; defaults to ``settings.max_candidates``.

    Raises:
        InvalidCoordinateError: If the origin is out of range.
        InvalidSearchParametersError: If radius or cap is not positive.
    """
    radius = settings.search_radius_km if max_radius_km is None else max_radius_km
    limit = settings.max_candidates if max_results is None else max_results

    validate_coordinate(origin_lat, origin_lng)
    if not radius > 0:
        raise InvalidSearchParametersError(f"max_radius_km must be positive, got {radius}.")
    if limit < 1:
        raise InvalidSearchParametersError(f"max_results must be at least 1, got {limit}.")

    technicians = await store.get_available_by_category(category)

    in_range: list[Candidate] = []
    for tech in technicians:
        if not tech.has_location:
            continue
        distance = haversine_distance(origin_lat, origin_lng, tech.lat, tech.lng)
        if distance > radius:
            continue
        in_range.append(
            Candidate(
                technician_id=tech.technician_id,
                lat=tech.lat,
                lng=tech.lng,
                rating=tech.rating,
                distance_km=distance,
            )
        )

    in_range.sort(key=lambda c: c.sort_key)
    candidates = in_range[:limit]

    logger.info(
        "Candidate search %s at (%.5f, %.5f) r=%.1fkm: available=%d, in_range=%d, returned=%d",
        category.value,
        origin_lat,
        origin_lng,
        radius,
        len(technicians),
        len(in_range),
        len(candidates),
    )
    return candidates
