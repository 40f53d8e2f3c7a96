"""
Domain exceptions for the dispatch core.

Every error raised by the services derives from ``DispatchError`` through one
of four kinds, which the API layer maps onto HTTP status codes:

  - ``ValidationFailed``  -- bad input, nothing written, safe to retry once fixed
  - ``Conflict``          -- a race was lost or the command is stale
  - ``NotFound``          -- the referenced entity does not exist
  - ``Forbidden``         -- the principal may not act on the entity

Expected empty outcomes (no technicians in range, claim lost to a concurrent
caller) are *not* exceptions; see ``AssignmentOutcome``.
"""

from __future__ import annotations

import uuid


class DispatchError(Exception):
    """Root of all domain errors."""


class ValidationFailed(DispatchError):
    pass


class Conflict(DispatchError):
    pass


class NotFound(DispatchError):
    pass


class Forbidden(DispatchError):
    pass


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class InvalidCoordinateError(ValidationFailed):
    def __init__(self, lat: float, lng: float) -> None:
        self.lat = lat
        self.lng = lng
        super().__init__(
            f"Invalid coordinate ({lat}, {lng}): latitude must be within "
            f"[-90, 90] and longitude within [-180, 180]."
        )


class MissingFieldError(ValidationFailed):
    def __init__(self, field_name: str) -> None:
        self.field_name = field_name
        super().__init__(f"Field '{field_name}' is required.")


class InvalidSearchParametersError(ValidationFailed):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class InvalidVerificationError(ValidationFailed):
    def __init__(self, request_id: uuid.UUID) -> None:
        self.request_id = request_id
        super().__init__(
            f"Verification code for request '{request_id}' does not match. "
            "Ask the client for their personal code and try again."
        )


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------

class RequestNotPendingError(Conflict):
    def __init__(self, request_id: uuid.UUID, status: str) -> None:
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Service request '{request_id}' is '{status}', not 'pending'; "
            "it has already been acted on."
        )


class InvalidTransitionError(Conflict):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class SessionAlreadyActiveError(Conflict):
    def __init__(self, request_id: uuid.UUID) -> None:
        self.request_id = request_id
        super().__init__(
            f"Service request '{request_id}' already has an open session."
        )


class TechnicianUnavailableError(Conflict):
    def __init__(self, technician_id: uuid.UUID, reason: str) -> None:
        self.technician_id = technician_id
        self.reason = reason
        super().__init__(f"Technician '{technician_id}' cannot take this request: {reason}")


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class RequestNotFoundError(NotFound):
    def __init__(self, request_id: uuid.UUID) -> None:
        self.request_id = request_id
        super().__init__(f"Service request with id '{request_id}' not found.")


class SessionNotFoundError(NotFound):
    def __init__(self, session_id: uuid.UUID) -> None:
        self.session_id = session_id
        super().__init__(f"Service session with id '{session_id}' not found.")


class TechnicianNotFoundError(NotFound):
    def __init__(self, technician_id: uuid.UUID) -> None:
        self.technician_id = technician_id
        super().__init__(f"No location record for technician '{technician_id}'.")


# ---------------------------------------------------------------------------
# Forbidden
# ---------------------------------------------------------------------------

class ForbiddenActionError(Forbidden):
    def __init__(self, message: str) -> None:
        super().__init__(message)
