"""
Pydantic v2 schemas for service sessions and their location history.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from dispatch.models.session import SessionStatus


class SessionStart(BaseModel):
    service_request_id: uuid.UUID


class SessionStatusUpdate(BaseModel):
    status: Literal["active", "paused"] = Field(
        description="Pause or resume tracking; ending uses the /end endpoint"
    )


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    service_request_id: uuid.UUID
    technician_id: uuid.UUID
    client_id: uuid.UUID
    status: SessionStatus
    started_at: datetime
    ended_at: Optional[datetime] = None


class HistoryEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    lat: float
    lng: float
    accuracy: Optional[float] = None
    recorded_at: datetime


class SessionHistoryOut(BaseModel):
    session_id: uuid.UUID
    total: int
    points: list[HistoryEntryOut]
