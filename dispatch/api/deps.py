"""
Shared FastAPI dependencies for the dispatch backend.

Provides the async database session dependency used by all route handlers,
and authentication dependencies that turn a JWT Bearer token into the
calling ``Principal``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dispatch.core.config import settings
from dispatch.events.dispatchEvents import discard_pending, publish_pending
from dispatch.services import auth_service
from dispatch.services.auth_service import Principal

# ---------------------------------------------------------------------------
# Async engine & session factory
# ---------------------------------------------------------------------------
# The engine is created once at module import time.  The session factory
# produces lightweight ``AsyncSession`` instances that are scoped to a single
# request via the ``get_db`` dependency below.
# ---------------------------------------------------------------------------

engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on success, roll back on error.

    Transition events queued on the session are published only after the
    commit went through, and dropped on rollback.
    """
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            discard_pending(session)
            raise
    await publish_pending(session)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session scoped to one request.

    Commits when the handler returns, rolls back when it raises, so a
    conflict raised after a partial write leaves nothing behind.
    """
    async with session_scope() as session:
        yield session


DBSession = Annotated[AsyncSession, Depends(get_db)]


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=True)


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(_bearer_scheme)],
) -> Principal:
    """Decode the Bearer token; 401 if it is missing, expired or malformed."""
    try:
        return auth_service.principal_from_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


async def get_current_technician(principal: CurrentPrincipal) -> Principal:
    """Like ``get_current_principal`` but only admits technicians."""
    if not principal.is_technician:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint is only available to technicians.",
        )
    return principal


CurrentTechnician = Annotated[Principal, Depends(get_current_technician)]
