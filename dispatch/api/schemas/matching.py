"""
Pydantic v2 schemas for the candidate search endpoint.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from dispatch.api.schemas.request import CandidateOut
from dispatch.models.service_request import ServiceCategory


class CandidateListOut(BaseModel):
    """Ranked technicians for a trade around an origin, nearest first."""

    service_category: ServiceCategory
    origin_lat: float
    origin_lng: float
    radius_km: float
    max_results: int
    total: int = Field(description="Number of candidates returned")
    candidates: list[CandidateOut]
