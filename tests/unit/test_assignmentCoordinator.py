"""
Unit tests for the Assignment Coordinator.

The database is mocked: each ``mock_db.execute`` call is answered in order
from ``side_effect``, so the tests pin down which statements run on each path
(load, conditional update, session lookup, reload).
"""

import math
import uuid
from decimal import Decimal

import pytest

from dispatch.core.exceptions import (
    ForbiddenActionError,
    InvalidCoordinateError,
    InvalidSearchParametersError,
    InvalidTransitionError,
    InvalidVerificationError,
    MissingFieldError,
    RequestNotFoundError,
    RequestNotPendingError,
    TechnicianNotFoundError,
    TechnicianUnavailableError,
)
from dispatch.events.dispatchEvents import publish_pending
from dispatch.models.service_request import RequestStatus, ServiceCategory, ServiceRequest
from dispatch.models.technician import AvailabilityStatus
from dispatch.models.user import User, UserRole
from dispatch.services import assignmentCoordinator
from dispatch.services.assignmentCoordinator import AssignmentOutcome
from dispatch.services.requestStateManager import ActorType

ORIGIN_LAT = 43.6532
ORIGIN_LNG = -79.3832


def _make_request(
    status: RequestStatus = RequestStatus.PENDING,
    technician_id: uuid.UUID | None = None,
    category: ServiceCategory = ServiceCategory.PLUMBER,
) -> ServiceRequest:
    return ServiceRequest(
        id=uuid.uuid4(),
        client_id=uuid.uuid4(),
        technician_id=technician_id,
        service_category=category,
        status=status,
        location_lat=Decimal(str(ORIGIN_LAT)),
        location_lng=Decimal(str(ORIGIN_LNG)),
        location_address="100 Queen St W, Toronto",
    )


# ---------------------------------------------------------------------------
# create_request
# ---------------------------------------------------------------------------


class TestCreateRequest:

    @pytest.mark.asyncio
    async def test_creates_pending_request_and_emits(self, mock_db, event_bus):
        events = []
        event_bus.subscribe_all(events.append)
        client_id = uuid.uuid4()

        request = await assignmentCoordinator.create_request(
            mock_db, client_id, ServiceCategory.ELECTRICIAN,
            ORIGIN_LAT, ORIGIN_LNG, "  1 Front St  ",
            bus=event_bus,
        )

        mock_db.add.assert_called_once_with(request)
        mock_db.flush.assert_awaited_once()
        assert request.status == RequestStatus.PENDING
        assert request.technician_id is None
        assert request.location_address == "1 Front St"
        assert events == []

        await publish_pending(mock_db)

        assert [(e.previous_status, e.new_status) for e in events] == [(None, "pending")]
        assert events[0].actor_id == client_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", ["", "   "])
    async def test_blank_address_rejected(self, mock_db, address):
        with pytest.raises(MissingFieldError):
            await assignmentCoordinator.create_request(
                mock_db, uuid.uuid4(), ServiceCategory.PLUMBER,
                ORIGIN_LAT, ORIGIN_LNG, address,
            )
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_location_rejected(self, mock_db):
        with pytest.raises(InvalidCoordinateError):
            await assignmentCoordinator.create_request(
                mock_db, uuid.uuid4(), ServiceCategory.PLUMBER, 0.0, 200.0, "Nowhere"
            )
        mock_db.add.assert_not_called()


# ---------------------------------------------------------------------------
# auto_assign
# ---------------------------------------------------------------------------


class TestAutoAssign:

    @pytest.mark.asyncio
    async def test_unknown_request(self, mock_db, execute_result, location_store):
        mock_db.execute.side_effect = [execute_result(scalar=None)]

        with pytest.raises(RequestNotFoundError):
            await assignmentCoordinator.auto_assign(
                mock_db, uuid.uuid4(), store=location_store
            )

    @pytest.mark.asyncio
    async def test_non_pending_request_rejected(self, mock_db, execute_result, location_store):
        request = _make_request(RequestStatus.ACCEPTED, technician_id=uuid.uuid4())
        mock_db.execute.side_effect = [execute_result(scalar=request)]

        with pytest.raises(RequestNotPendingError) as exc_info:
            await assignmentCoordinator.auto_assign(
                mock_db, request.id, store=location_store
            )

        assert exc_info.value.status == "accepted"
        assert mock_db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_no_technicians_leaves_request_pending(
        self, mock_db, execute_result, location_store, place_technician, event_bus
    ):
        events = []
        event_bus.subscribe_all(events.append)
        place_technician(2.0, category=ServiceCategory.ELECTRICIAN)
        request = _make_request()
        mock_db.execute.side_effect = [execute_result(scalar=request)]

        result = await assignmentCoordinator.auto_assign(
            mock_db, request.id, store=location_store, bus=event_bus
        )

        assert result.outcome == AssignmentOutcome.NO_TECHNICIANS_AVAILABLE
        assert result.technician_id is None
        # No conditional update was attempted
        assert mock_db.execute.await_count == 1
        assert await publish_pending(mock_db) == 0
        assert events == []

    @pytest.mark.asyncio
    async def test_claims_nearest_candidate(
        self, mock_db, execute_result, location_store, place_technician, event_bus
    ):
        events = []
        event_bus.subscribe_all(events.append)
        place_technician(9.0)
        nearest = place_technician(3.0)
        request = _make_request()
        mock_db.execute.side_effect = [
            execute_result(scalar=request),
            execute_result(rowcount=1),
        ]

        result = await assignmentCoordinator.auto_assign(
            mock_db, request.id, store=location_store, bus=event_bus
        )

        assert result.assigned
        assert result.technician_id == nearest
        assert result.distance_km == pytest.approx(3.0, abs=1e-6)
        assert len(result.candidates) == 2
        # Held until the unit of work commits
        assert events == []
        assert await publish_pending(mock_db) == 1
        assert len(events) == 1
        assert (events[0].previous_status, events[0].new_status) == ("pending", "accepted")
        assert events[0].technician_id == nearest

    @pytest.mark.asyncio
    async def test_lost_claim_reports_already_assigned(
        self, mock_db, execute_result, location_store, place_technician, event_bus
    ):
        events = []
        event_bus.subscribe_all(events.append)
        place_technician(3.0)
        place_technician(4.0)
        request = _make_request()
        mock_db.execute.side_effect = [
            execute_result(scalar=request),
            execute_result(rowcount=0),
        ]

        result = await assignmentCoordinator.auto_assign(
            mock_db, request.id, store=location_store, bus=event_bus
        )

        assert result.outcome == AssignmentOutcome.ALREADY_ASSIGNED
        assert result.technician_id is None
        # The ranked list is handed back, the next candidate is not tried
        assert len(result.candidates) == 2
        assert mock_db.execute.await_count == 2
        assert await publish_pending(mock_db) == 0
        assert events == []

    @pytest.mark.asyncio
    async def test_explicit_origin_overrides_request_location(
        self, mock_db, execute_result, location_store, place_technician
    ):
        tech = place_technician(1.0)
        request = _make_request()
        mock_db.execute.side_effect = [
            execute_result(scalar=request),
            execute_result(rowcount=1),
        ]

        # 60 km south of the origin puts the technician outside the radius
        far_lat = ORIGIN_LAT - 60.0 / (6371.0 * math.pi / 180.0)
        result = await assignmentCoordinator.auto_assign(
            mock_db, request.id, far_lat, ORIGIN_LNG, store=location_store
        )

        assert result.outcome == AssignmentOutcome.NO_TECHNICIANS_AVAILABLE
        assert tech not in [c.technician_id for c in result.candidates]


# ---------------------------------------------------------------------------
# accept_manually
# ---------------------------------------------------------------------------


class TestAcceptManually:

    @pytest.mark.asyncio
    async def test_accepts_for_available_technician(
        self, mock_db, execute_result, location_store, place_technician
    ):
        tech = place_technician(7.0)
        request = _make_request()
        mock_db.execute.side_effect = [
            execute_result(scalar=request),
            execute_result(rowcount=1),
        ]

        result = await assignmentCoordinator.accept_manually(
            mock_db, request.id, tech, store=location_store
        )

        assert result.assigned
        assert result.technician_id == tech
        assert result.distance_km == pytest.approx(7.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_busy_technician_rejected(
        self, mock_db, execute_result, location_store, place_technician
    ):
        tech = place_technician(1.0, availability=AvailabilityStatus.BUSY)
        request = _make_request()
        mock_db.execute.side_effect = [execute_result(scalar=request)]

        with pytest.raises(TechnicianUnavailableError):
            await assignmentCoordinator.accept_manually(
                mock_db, request.id, tech, store=location_store
            )

    @pytest.mark.asyncio
    async def test_wrong_trade_rejected(
        self, mock_db, execute_result, location_store, place_technician
    ):
        tech = place_technician(1.0, category=ServiceCategory.MECHANIC)
        request = _make_request()
        mock_db.execute.side_effect = [execute_result(scalar=request)]

        with pytest.raises(TechnicianUnavailableError) as exc_info:
            await assignmentCoordinator.accept_manually(
                mock_db, request.id, tech, store=location_store
            )
        assert "plumber" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_unknown_technician_rejected(self, mock_db, execute_result, location_store):
        request = _make_request()
        mock_db.execute.side_effect = [execute_result(scalar=request)]

        with pytest.raises(TechnicianUnavailableError):
            await assignmentCoordinator.accept_manually(
                mock_db, request.id, uuid.uuid4(), store=location_store
            )


# ---------------------------------------------------------------------------
# cancel
# ---------------------------------------------------------------------------


class TestCancel:

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, mock_db, execute_result):
        request = _make_request()
        mock_db.execute.side_effect = [execute_result(scalar=request)]

        with pytest.raises(ForbiddenActionError):
            await assignmentCoordinator.cancel(mock_db, request.id, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_in_progress_cannot_be_cancelled(self, mock_db, execute_result):
        request = _make_request(RequestStatus.IN_PROGRESS, technician_id=uuid.uuid4())
        mock_db.execute.side_effect = [execute_result(scalar=request)]

        with pytest.raises(InvalidTransitionError):
            await assignmentCoordinator.cancel(mock_db, request.id, request.client_id)
        assert mock_db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_lost_race_surfaces_current_status(self, mock_db, execute_result):
        request = _make_request()
        moved = _make_request(RequestStatus.ACCEPTED, technician_id=uuid.uuid4())
        moved.id = request.id
        mock_db.execute.side_effect = [
            execute_result(scalar=request),
            execute_result(rowcount=0),
            execute_result(scalar=moved),
        ]

        with pytest.raises(InvalidTransitionError) as exc_info:
            await assignmentCoordinator.cancel(
                mock_db, request.id, uuid.uuid4(), actor_type=ActorType.ADMIN
            )
        assert "accepted" in exc_info.value.reason


# ---------------------------------------------------------------------------
# complete
# ---------------------------------------------------------------------------


class TestComplete:

    def _client(self, request: ServiceRequest, code: str = "K7Q2ZD") -> User:
        return User(
            id=request.client_id,
            email="client@example.com",
            role=UserRole.CLIENT,
            verification_code=code,
        )

    @pytest.mark.asyncio
    async def test_wrong_code_changes_nothing(self, mock_db, execute_result):
        tech = uuid.uuid4()
        request = _make_request(RequestStatus.IN_PROGRESS, technician_id=tech)
        mock_db.execute.side_effect = [execute_result(scalar=request)]
        mock_db.get.return_value = self._client(request)

        with pytest.raises(InvalidVerificationError):
            await assignmentCoordinator.complete(mock_db, request.id, tech, "WRONG1")

        # Only the initial load ran; no conditional update was issued
        assert mock_db.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_code_match_ignores_case_and_whitespace(
        self, mock_db, execute_result, event_bus
    ):
        events = []
        event_bus.subscribe_all(events.append)
        tech = uuid.uuid4()
        request = _make_request(RequestStatus.ACCEPTED, technician_id=tech)
        done = _make_request(RequestStatus.COMPLETED, technician_id=tech)
        mock_db.execute.side_effect = [
            execute_result(scalar=request),
            execute_result(rowcount=1),
            execute_result(scalar=None),  # no open session
            execute_result(scalar=done),
        ]
        mock_db.get.return_value = self._client(request)

        result = await assignmentCoordinator.complete(
            mock_db, request.id, tech, " k7q2zd ", bus=event_bus
        )

        assert result.status == RequestStatus.COMPLETED
        await publish_pending(mock_db)
        assert [(e.previous_status, e.new_status) for e in events] == [
            ("accepted", "completed")
        ]

    @pytest.mark.asyncio
    async def test_only_assigned_technician_completes(self, mock_db, execute_result):
        request = _make_request(RequestStatus.IN_PROGRESS, technician_id=uuid.uuid4())
        mock_db.execute.side_effect = [execute_result(scalar=request)]

        with pytest.raises(ForbiddenActionError):
            await assignmentCoordinator.complete(
                mock_db, request.id, uuid.uuid4(), "K7Q2ZD"
            )

    @pytest.mark.asyncio
    async def test_pending_request_cannot_complete(self, mock_db, execute_result):
        request = _make_request()
        mock_db.execute.side_effect = [execute_result(scalar=request)]

        with pytest.raises(InvalidTransitionError):
            await assignmentCoordinator.complete(
                mock_db, request.id, uuid.uuid4(), "K7Q2ZD"
            )


# ---------------------------------------------------------------------------
# get_pending_requests_for_technician
# ---------------------------------------------------------------------------


class TestPendingFeed:

    def _request_at(self, km: float) -> ServiceRequest:
        request = _make_request()
        request.location_lat = Decimal(str(ORIGIN_LAT + km / (6371.0 * math.pi / 180.0)))
        return request

    @pytest.mark.asyncio
    async def test_nearest_first_within_radius(
        self, mock_db, execute_result, location_store, place_technician
    ):
        tech = place_technician(0.0)
        near, far, out_of_range = self._request_at(2.0), self._request_at(6.0), self._request_at(60.0)
        mock_db.execute.side_effect = [execute_result(rows=[far, out_of_range, near])]

        feed = await assignmentCoordinator.get_pending_requests_for_technician(
            mock_db, tech, store=location_store
        )

        assert [n.request for n in feed] == [near, far]
        assert feed[0].distance_km == pytest.approx(2.0, abs=1e-3)
        assert feed[1].distance_km == pytest.approx(6.0, abs=1e-3)

    @pytest.mark.asyncio
    async def test_without_position_returns_all_unranked(
        self, mock_db, execute_result, location_store
    ):
        tech = location_store.add(ServiceCategory.PLUMBER, None, None)
        first, second = self._request_at(80.0), self._request_at(1.0)
        mock_db.execute.side_effect = [execute_result(rows=[first, second])]

        feed = await assignmentCoordinator.get_pending_requests_for_technician(
            mock_db, tech, store=location_store
        )

        assert [(n.request, n.distance_km) for n in feed] == [(first, None), (second, None)]

    @pytest.mark.asyncio
    async def test_unknown_technician(self, mock_db, location_store):
        with pytest.raises(TechnicianNotFoundError):
            await assignmentCoordinator.get_pending_requests_for_technician(
                mock_db, uuid.uuid4(), store=location_store
            )
        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_radius_must_be_positive(self, mock_db, location_store, place_technician):
        tech = place_technician(0.0)
        with pytest.raises(InvalidSearchParametersError):
            await assignmentCoordinator.get_pending_requests_for_technician(
                mock_db, tech, store=location_store, max_radius_km=0
            )
