"""
Dispatch SQLAlchemy Models
==========================

Central import point for all ORM models. Import ``Base`` from here for
Alembic auto-generation and for the ``create_all`` convenience in tests.

Usage::

    from dispatch.models import Base, ServiceRequest, TechnicianLocation
"""

# -- Base & Mixins --
from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin

# -- Users --
from .user import User, UserRole, generate_verification_code

# -- Service requests --
from .service_request import RequestStatus, ServiceCategory, ServiceRequest, Urgency

# -- Technician live locations --
from .technician import AvailabilityStatus, TechnicianLocation

# -- Sessions & history --
from .session import (
    OPEN_SESSION_STATUSES,
    LocationHistoryEntry,
    ServiceSession,
    SessionStatus,
)

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    # Users
    "User",
    "UserRole",
    "generate_verification_code",
    # Requests
    "ServiceRequest",
    "ServiceCategory",
    "RequestStatus",
    "Urgency",
    # Technicians
    "TechnicianLocation",
    "AvailabilityStatus",
    # Sessions
    "ServiceSession",
    "SessionStatus",
    "OPEN_SESSION_STATUSES",
    "LocationHistoryEntry",
]
