"""
Translation of domain errors into HTTP responses.

Route handlers catch ``DispatchError`` around each service call and pass it
to ``raise_http_error``; the status code follows the error's kind.
"""

from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException, status

from dispatch.core.exceptions import (
    Conflict,
    DispatchError,
    Forbidden,
    InvalidVerificationError,
    NotFound,
    ValidationFailed,
)


def raise_http_error(exc: DispatchError) -> NoReturn:
    """Convert a service-layer error into the matching HTTPException.

    - not found      -> 404
    - conflict       -> 409 (stale command or lost race)
    - forbidden      -> 403
    - wrong code     -> 400 (retryable with the right code)
    - other invalid  -> 422
    """
    if isinstance(exc, NotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, Conflict):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, Forbidden):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, InvalidVerificationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, ValidationFailed):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    raise HTTPException(status_code=code, detail=str(exc)) from exc
