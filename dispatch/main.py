"""Technician Dispatch API -- Main Application Entry Point

Creates the FastAPI application, configures CORS middleware, registers
all API route modules under the /api/v1 prefix, and mounts the Socket.IO
ASGI application for real-time updates.

Run with::

    uvicorn dispatch.main:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dispatch.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Startup:
      - Configure logging from ``settings.log_level``.
      - Forward dispatch events to Socket.IO rooms.

    Shutdown:
      - Remove the event bridge and close the shared Redis client.
    """
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    from dispatch.realtime import close_redis, install_event_bridge

    unsubscribe = install_event_bridge()
    logger.info("%s %s started", settings.app_name, settings.app_version)

    yield

    unsubscribe()
    await close_redis()
    logger.info("%s stopped", settings.app_name)


# ---------------------------------------------------------------------------
# Application instance
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# CORS middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health():
    """Lightweight health check for load balancers and readiness checks."""
    return {"status": "ok", "version": settings.app_version}


# ---------------------------------------------------------------------------
# Register API route modules
# ---------------------------------------------------------------------------

from dispatch.api.routes import (  # noqa: E402
    location,
    matching,
    requests,
    sessions,
    technicians,
)

_prefix = settings.api_v1_prefix

app.include_router(requests.router, prefix=_prefix)
app.include_router(matching.router, prefix=_prefix)
app.include_router(technicians.router, prefix=_prefix)
app.include_router(location.router, prefix=_prefix)
app.include_router(sessions.router, prefix=_prefix)


# ---------------------------------------------------------------------------
# Mount Socket.IO ASGI application
# ---------------------------------------------------------------------------

from dispatch.realtime.socketServer import socket_app  # noqa: E402

app.mount("/ws", socket_app)
