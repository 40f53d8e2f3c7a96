"""
E2E test fixtures for the dispatch backend.

Provides:
- A fresh in-memory SQLite database per test, schema created from the models
- A session factory; the test app opens one ``session_scope`` per HTTP
  request, exactly like ``dispatch.api.deps.get_db`` does in production
- Seed data: a client with a known verification code, a second client, an
  admin and three technicians at known distances from the test origin
- httpx AsyncClient wired via ASGI transport (no network needed)
- Helpers for creating, assigning and tracking requests through the API

Socket.IO and Redis are not mounted; the realtime bridge is exercised only
through the in-process event bus.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient, Response
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from dispatch.events.dispatchEvents import event_bus
from dispatch.models import Base
from dispatch.models.service_request import ServiceCategory
from dispatch.models.technician import AvailabilityStatus
from dispatch.models.user import User, UserRole
from dispatch.services.auth_service import create_access_token
from dispatch.services.geoService import EARTH_RADIUS_KM
from dispatch.services.locationStore import SqlTechnicianLocationStore

# ---------------------------------------------------------------------------
# Test IDs (stable across tests so cross-references work)
# ---------------------------------------------------------------------------

CLIENT_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
OTHER_CLIENT_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-bbbbbbbbbbbb")
ADMIN_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")

# Plumbers 3 km and 9 km north of the origin, an electrician 1 km north
PLUMBER_NEAR_ID = uuid.UUID("bbbbbbbb-0000-0000-0000-000000000003")
PLUMBER_FAR_ID = uuid.UUID("bbbbbbbb-0000-0000-0000-000000000009")
ELECTRICIAN_ID = uuid.UUID("cccccccc-0000-0000-0000-000000000001")
# Technician account without a trade or position yet
NEW_TECHNICIAN_ID = uuid.UUID("eeeeeeee-0000-0000-0000-000000000000")

CLIENT_CODE = "K7Q2ZD8M"

# Toronto city hall
ORIGIN_LAT = 43.6532
ORIGIN_LNG = -79.3832
ORIGIN_ADDRESS = "100 Queen St W, Toronto, ON"

# Time of the seeded position reports; API reports default to "now", later
SEED_REPORTED_AT = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

API = "/api/v1"


def point_north(km: float) -> tuple[float, float]:
    """A point ``km`` kilometres due north of the test origin."""
    return ORIGIN_LAT + km / (EARTH_RADIUS_KM * math.pi / 180.0), ORIGIN_LNG


def auth_headers(user_id: uuid.UUID, role: UserRole) -> dict[str, str]:
    token, _ = create_access_token(user_id, role)
    return {"Authorization": f"Bearer {token}"}


CLIENT_HEADERS = auth_headers(CLIENT_ID, UserRole.CLIENT)
OTHER_CLIENT_HEADERS = auth_headers(OTHER_CLIENT_ID, UserRole.CLIENT)
ADMIN_HEADERS = auth_headers(ADMIN_ID, UserRole.ADMIN)
PLUMBER_NEAR_HEADERS = auth_headers(PLUMBER_NEAR_ID, UserRole.TECHNICIAN)
PLUMBER_FAR_HEADERS = auth_headers(PLUMBER_FAR_ID, UserRole.TECHNICIAN)
ELECTRICIAN_HEADERS = auth_headers(ELECTRICIAN_ID, UserRole.TECHNICIAN)
NEW_TECHNICIAN_HEADERS = auth_headers(NEW_TECHNICIAN_ID, UserRole.TECHNICIAN)


# ---------------------------------------------------------------------------
# Async engine + session factory (in-memory SQLite)
# ---------------------------------------------------------------------------

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def _test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """A new in-memory database for every test."""
    engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)

    # SQLite does not enforce foreign keys by default
    @event.listens_for(engine.sync_engine, "connect")
    def _enable_fk(dbapi_conn, _):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(_test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=_test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

async def _seed_data(db: AsyncSession) -> None:
    """Insert users and technician live records."""
    db.add_all([
        User(
            id=CLIENT_ID,
            email="client@test.dispatch.local",
            display_name="Jane D.",
            role=UserRole.CLIENT,
            verification_code=CLIENT_CODE,
        ),
        User(
            id=OTHER_CLIENT_ID,
            email="other-client@test.dispatch.local",
            role=UserRole.CLIENT,
        ),
        User(id=ADMIN_ID, email="admin@test.dispatch.local", role=UserRole.ADMIN),
        User(
            id=PLUMBER_NEAR_ID,
            email="plumber-near@test.dispatch.local",
            role=UserRole.TECHNICIAN,
        ),
        User(
            id=PLUMBER_FAR_ID,
            email="plumber-far@test.dispatch.local",
            role=UserRole.TECHNICIAN,
        ),
        User(
            id=ELECTRICIAN_ID,
            email="electrician@test.dispatch.local",
            role=UserRole.TECHNICIAN,
        ),
        User(
            id=NEW_TECHNICIAN_ID,
            email="new-technician@test.dispatch.local",
            role=UserRole.TECHNICIAN,
        ),
    ])
    await db.flush()

    store = SqlTechnicianLocationStore(db)
    for technician_id, category, km in (
        (PLUMBER_NEAR_ID, ServiceCategory.PLUMBER, 3.0),
        (PLUMBER_FAR_ID, ServiceCategory.PLUMBER, 9.0),
        (ELECTRICIAN_ID, ServiceCategory.ELECTRICIAN, 1.0),
    ):
        await store.register_technician(technician_id, category)
        lat, lng = point_north(km)
        await store.upsert_location(
            technician_id,
            lat,
            lng,
            availability=AvailabilityStatus.AVAILABLE,
            reported_at=SEED_REPORTED_AT,
        )


@pytest_asyncio.fixture
async def seeded_db(session_factory: async_sessionmaker[AsyncSession]):
    """The session factory, after seed data has been committed."""
    async with session_factory() as db:
        await _seed_data(db)
        await db.commit()
    return session_factory


@pytest_asyncio.fixture
async def db_session(seeded_db) -> AsyncGenerator[AsyncSession, None]:
    """A session for calling services directly; the test commits as needed."""
    async with seeded_db() as session:
        yield session


# ---------------------------------------------------------------------------
# FastAPI test application
# ---------------------------------------------------------------------------

def _create_test_app(factory: async_sessionmaker[AsyncSession]):
    """Build a FastAPI app with all routes registered and the DB dependency
    overridden to use the test database."""
    from fastapi import FastAPI

    from dispatch.api.deps import get_db, session_scope
    from dispatch.api.routes.location import router as location_router
    from dispatch.api.routes.matching import router as matching_router
    from dispatch.api.routes.requests import router as requests_router
    from dispatch.api.routes.sessions import router as sessions_router
    from dispatch.api.routes.technicians import router as technicians_router

    app = FastAPI(title="Dispatch Test")

    async def _override_get_db():
        async with session_scope(factory) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    app.include_router(requests_router, prefix=API)
    app.include_router(matching_router, prefix=API)
    app.include_router(technicians_router, prefix=API)
    app.include_router(location_router, prefix=API)
    app.include_router(sessions_router, prefix=API)

    return app


@pytest_asyncio.fixture
async def client(seeded_db) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient connected to the test app via ASGI transport."""
    app = _create_test_app(seeded_db)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture(autouse=True)
def _reset_event_bus():
    """Routes publish on the process-wide bus; drop subscribers between tests."""
    yield
    event_bus.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def create_request_via_api(
    client: AsyncClient,
    *,
    headers: dict[str, str] = CLIENT_HEADERS,
    category: str = "plumber",
    lat: float = ORIGIN_LAT,
    lng: float = ORIGIN_LNG,
    address: str = ORIGIN_ADDRESS,
) -> Response:
    """POST to /api/v1/requests and return the response."""
    payload = {
        "service_category": category,
        "location_lat": lat,
        "location_lng": lng,
        "location_address": address,
        "description": "Kitchen sink is leaking",
        "urgency": "high",
    }
    return await client.post(f"{API}/requests", json=payload, headers=headers)


async def create_assigned_request(client: AsyncClient) -> dict[str, Any]:
    """Create a plumbing request at the origin and auto-assign it.

    The nearest plumber (``PLUMBER_NEAR_ID``) wins.  Returns the request JSON.
    """
    resp = await create_request_via_api(client)
    assert resp.status_code == 201, resp.text
    request_id = resp.json()["id"]

    resp = await client.post(
        f"{API}/requests/{request_id}/auto-assign", headers=CLIENT_HEADERS
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["outcome"] == "assigned"

    resp = await client.get(f"{API}/requests/{request_id}", headers=CLIENT_HEADERS)
    return resp.json()


async def start_session_via_api(
    client: AsyncClient,
    request_id: str,
    headers: dict[str, str] = PLUMBER_NEAR_HEADERS,
) -> Response:
    return await client.post(
        f"{API}/sessions",
        json={"service_request_id": request_id},
        headers=headers,
    )


async def report_location_via_api(
    client: AsyncClient,
    lat: float,
    lng: float,
    *,
    headers: dict[str, str] = PLUMBER_NEAR_HEADERS,
    reported_at: datetime | None = None,
    **extra: Any,
) -> Response:
    payload: dict[str, Any] = {"lat": lat, "lng": lng, **extra}
    if reported_at is not None:
        payload["reported_at"] = reported_at.isoformat()
    if "session_id" in payload and payload["session_id"] is not None:
        payload["session_id"] = str(payload["session_id"])
    return await client.post(f"{API}/location", json=payload, headers=headers)


def assert_assignment_invariant(request: dict[str, Any]) -> None:
    """A technician is attached exactly when the request left ``pending``
    through assignment; cancelled requests keep theirs as history."""
    if request["status"] == "pending":
        assert request["technician_id"] is None
    elif request["status"] in ("accepted", "in_progress", "completed"):
        assert request["technician_id"] is not None
