"""
Pydantic v2 schemas for the Service Request API
===============================================

Creation, assignment, start, cancel and completion of service requests.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from dispatch.models.service_request import RequestStatus, ServiceCategory, Urgency
from dispatch.services.assignmentCoordinator import AssignmentOutcome


# ---------------------------------------------------------------------------
# Request creation / read
# ---------------------------------------------------------------------------

class ServiceRequestCreate(BaseModel):
    """Body for creating a new service request at the client's location."""

    service_category: ServiceCategory
    location_lat: float = Field(ge=-90, le=90, description="Latitude in degrees")
    location_lng: float = Field(ge=-180, le=180, description="Longitude in degrees")
    location_address: str = Field(min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=2000)
    urgency: Urgency = Urgency.MEDIUM


class ServiceRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    client_id: uuid.UUID
    technician_id: Optional[uuid.UUID] = None
    service_category: ServiceCategory
    status: RequestStatus
    urgency: Urgency
    description: Optional[str] = None
    location_lat: float
    location_lng: float
    location_address: str
    distance_km: Optional[float] = Field(
        default=None, description="Distance of the assigned technician at assignment time"
    )
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

class AutoAssignRequest(BaseModel):
    """Optional overrides for automatic assignment.

    When lat/lng are omitted the search is centred on the request location.
    """

    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    radius_km: Optional[float] = Field(default=None, gt=0, le=500)
    max_results: Optional[int] = Field(default=None, ge=1, le=50)


class AcceptRequest(BaseModel):
    """Manual claim.  Technicians claim for themselves; admins name one."""

    technician_id: Optional[uuid.UUID] = None


class CandidateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    technician_id: uuid.UUID
    lat: float
    lng: float
    rating: float
    distance_km: float = Field(description="Haversine distance from the search origin in km")


class AvailableRequestOut(BaseModel):
    """A pending request of my trade and how far it is from my last position."""

    request: ServiceRequestOut
    distance_km: Optional[float] = Field(
        default=None, description="None until the technician has reported a position"
    )


class AssignmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    outcome: AssignmentOutcome
    request_id: uuid.UUID
    technician_id: Optional[uuid.UUID] = None
    distance_km: Optional[float] = None
    candidates: list[CandidateOut] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

class CompleteRequest(BaseModel):
    verification_code: str = Field(
        min_length=1,
        max_length=16,
        description="Personal code the client reads out on site",
    )
