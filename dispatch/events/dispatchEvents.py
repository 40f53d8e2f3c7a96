"""
Dispatch Event Stream
=====================

State-transition events for service requests and service sessions.  Every
AssignmentCoordinator and SessionLifecycle transition calls one of the
``emit_*`` functions below, which builds a ``TransitionEvent``, logs it and
publishes it on the process-wide ``event_bus``.

Consumers subscribe per entity::

    unsubscribe = event_bus.subscribe(request_key(request_id), handler)
    unsubscribe = event_bus.subscribe(technician_key(technician_id), handler)

or to everything with ``subscribe_all`` (the Socket.IO bridge in
``dispatch.realtime.socketServer`` does this to fan events out to rooms).

Services pass their database session as ``db``; the event is then queued on
the session and only published by ``publish_pending`` once the unit of work
has committed (``dispatch.api.deps.session_scope`` does this).  A rolled back
unit of work drops its queue with ``discard_pending``, so subscribers never
hear about a change the store does not hold.

Delivery is best effort: a failing subscriber is logged and skipped, it never
undoes the transition that was already committed to the store.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ENTITY_REQUEST = "service_request"
ENTITY_SESSION = "service_session"


@dataclass(frozen=True)
class TransitionEvent:
    """A single status change of a request or session."""

    entity: str
    entity_id: uuid.UUID
    request_id: uuid.UUID
    previous_status: str | None
    new_status: str
    technician_id: uuid.UUID | None = None
    session_id: uuid.UUID | None = None
    actor_id: uuid.UUID | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def event_type(self) -> str:
        return f"{self.entity}.status_changed"

    def to_dict(self) -> dict[str, Any]:
        """Serialisable payload for transports (Socket.IO, logs, webhooks)."""
        return {
            "event_type": self.event_type,
            "entity": self.entity,
            "entity_id": str(self.entity_id),
            "request_id": str(self.request_id),
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "technician_id": str(self.technician_id) if self.technician_id else None,
            "session_id": str(self.session_id) if self.session_id else None,
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[TransitionEvent], Union[None, Awaitable[None]]]


def request_key(request_id: uuid.UUID) -> str:
    return f"request:{request_id}"


def technician_key(technician_id: uuid.UUID) -> str:
    return f"technician:{technician_id}"


class EventBus:
    """In-process publish/subscribe channel keyed by entity."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._global: list[EventHandler] = []

    def subscribe(self, key: str, handler: EventHandler) -> Callable[[], None]:
        self._subscribers[key].append(handler)

        def _unsubscribe() -> None:
            handlers = self._subscribers.get(key)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._subscribers[key]

        return _unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        self._global.append(handler)

        def _unsubscribe() -> None:
            if handler in self._global:
                self._global.remove(handler)

        return _unsubscribe

    def clear(self) -> None:
        self._subscribers.clear()
        self._global.clear()

    def _handlers_for(self, event: TransitionEvent) -> list[EventHandler]:
        handlers: list[EventHandler] = list(self._global)
        keys = [request_key(event.request_id)]
        if event.technician_id is not None:
            keys.append(technician_key(event.technician_id))
        for key in keys:
            for handler in self._subscribers.get(key, ()):
                if handler not in handlers:
                    handlers.append(handler)
        return handlers

    async def publish(self, event: TransitionEvent) -> int:
        """Deliver ``event`` to its subscribers; returns how many were called."""
        delivered = 0
        for handler in self._handlers_for(event):
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
                delivered += 1
            except Exception:
                logger.exception(
                    "Subscriber %r failed for %s on %s",
                    handler,
                    event.event_type,
                    event.entity_id,
                )
        return delivered


event_bus = EventBus()


# ---------------------------------------------------------------------------
# Commit-bound delivery
# ---------------------------------------------------------------------------

_PENDING_KEY = "dispatch.pending_events"


def _queue(db: AsyncSession, event: TransitionEvent, bus: EventBus | None) -> None:
    db.info.setdefault(_PENDING_KEY, []).append((event, bus))


async def _deliver(
    event: TransitionEvent,
    bus: EventBus | None,
    db: AsyncSession | None,
) -> None:
    if db is None:
        await (bus or event_bus).publish(event)
    else:
        _queue(db, event, bus)


async def publish_pending(db: AsyncSession) -> int:
    """Publish the events queued on ``db``.  Call only after a successful commit.

    Returns the number of events published.
    """
    queued = db.info.pop(_PENDING_KEY, [])
    for event, bus in queued:
        await (bus or event_bus).publish(event)
    return len(queued)


def discard_pending(db: AsyncSession) -> int:
    """Drop the events queued on ``db`` after a rollback."""
    queued = db.info.pop(_PENDING_KEY, [])
    if queued:
        logger.info("Discarded %d unpublished event(s) after rollback", len(queued))
    return len(queued)


# ---------------------------------------------------------------------------
# Emitters
# ---------------------------------------------------------------------------


async def emit_request_status_changed(
    request_id: uuid.UUID,
    previous_status: str | None,
    new_status: str,
    *,
    technician_id: uuid.UUID | None = None,
    actor_id: uuid.UUID | None = None,
    bus: EventBus | None = None,
    db: AsyncSession | None = None,
) -> TransitionEvent:
    """Emit event when a service request transitions between states.

    With ``db`` the event is held until that session commits.
    """
    event = TransitionEvent(
        entity=ENTITY_REQUEST,
        entity_id=request_id,
        request_id=request_id,
        previous_status=previous_status,
        new_status=new_status,
        technician_id=technician_id,
        actor_id=actor_id,
    )
    logger.info(
        "Event emitted: %s for request %s (%s -> %s, technician=%s)",
        event.event_type,
        request_id,
        previous_status,
        new_status,
        technician_id,
    )
    await _deliver(event, bus, db)
    return event


async def emit_session_status_changed(
    session_id: uuid.UUID,
    request_id: uuid.UUID,
    previous_status: str | None,
    new_status: str,
    *,
    technician_id: uuid.UUID | None = None,
    bus: EventBus | None = None,
    db: AsyncSession | None = None,
) -> TransitionEvent:
    """Emit event when a service session starts, pauses, resumes or ends."""
    event = TransitionEvent(
        entity=ENTITY_SESSION,
        entity_id=session_id,
        request_id=request_id,
        previous_status=previous_status,
        new_status=new_status,
        technician_id=technician_id,
        session_id=session_id,
    )
    logger.info(
        "Event emitted: %s for session %s of request %s (%s -> %s)",
        event.event_type,
        session_id,
        request_id,
        previous_status,
        new_status,
    )
    await _deliver(event, bus, db)
    return event
