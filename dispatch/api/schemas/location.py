"""
Pydantic v2 schemas for technician registration, availability and
location reports.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from dispatch.models.service_request import ServiceCategory
from dispatch.models.technician import AvailabilityStatus


# ---------------------------------------------------------------------------
# Technician profile
# ---------------------------------------------------------------------------

class TechnicianRegister(BaseModel):
    service_category: ServiceCategory
    rating: Optional[float] = Field(default=None, ge=0, le=5)


class AvailabilityUpdate(BaseModel):
    availability_status: AvailabilityStatus
    reported_at: Optional[datetime] = Field(
        default=None, description="Device time of the toggle; defaults to server time"
    )


class AvailabilityOut(BaseModel):
    technician_id: uuid.UUID
    availability_status: AvailabilityStatus
    applied: bool = Field(description="False if a newer report was already stored")


class TechnicianPositionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    technician_id: uuid.UUID
    service_category: Optional[ServiceCategory] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    rating: float
    availability_status: AvailabilityStatus
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    reported_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Location reports
# ---------------------------------------------------------------------------

class LocationReport(BaseModel):
    """A single position report from the technician's device."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0, description="Metres")
    heading: Optional[float] = Field(default=None, ge=0, lt=360, description="Degrees")
    speed: Optional[float] = Field(default=None, ge=0, description="m/s")
    session_id: Optional[uuid.UUID] = None
    availability_status: Optional[AvailabilityStatus] = None
    reported_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("reported_at", "timestamp"),
        description="Device time of the fix; socket clients send it as timestamp",
    )


class LocationReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    applied: bool
    history_recorded: bool
    reported_at: datetime
