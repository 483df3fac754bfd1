from __future__ import annotations

import asyncio
import logging
from typing import Any

from app.core.config import get_settings
from app.metrics import observe_event_dropped, observe_event_published
from app.realtime.errors import RoomIsolationViolation
from app.realtime.events import DomainEvent, EventMessage
from app.realtime.rooms import RealtimeSession, RoomRegistry


logger = logging.getLogger("app.realtime.router")


class EventRouter:
    """Fans domain events out to the sessions joined to one organization's room.

    Delivery is best-effort and at-most-once per connected session. Each call
    to ``publish`` enqueues the frame into every member's outbox before the
    next call is processed, so frames from one sequential publisher keep their
    order. ``publish`` may be called from worker threads; the fan-out itself
    always runs on the event loop that serves the websockets.
    """

    def __init__(self, registry: RoomRegistry | None = None, *, strict_isolation: bool | None = None) -> None:
        self.registry = registry if registry is not None else RoomRegistry()
        self._strict_isolation = strict_isolation
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def strict_isolation(self) -> bool:
        if self._strict_isolation is not None:
            return self._strict_isolation
        return get_settings().isolation_strict

    def publish(self, organization_id: str, event_name: str, payload: Any = None) -> None:
        if not organization_id:
            raise ValueError("organization_id is required to publish an event")
        if not event_name:
            raise ValueError("event_name is required to publish an event")

        event = DomainEvent(name=event_name, organization_id=str(organization_id), payload=payload)
        loop = self._loop
        if loop is None or loop.is_closed():
            self.dispatch(event)
            return

        try:
            running_loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is loop:
            self.dispatch(event)
        else:
            loop.call_soon_threadsafe(self.dispatch, event)

    def dispatch(self, event: DomainEvent) -> int:
        message = EventMessage.from_domain_event(event)
        delivered = 0
        for session in self.registry.members(event.organization_id):
            if session.organization_id != event.organization_id:
                self._handle_isolation_violation(session, event)
                continue
            if session.enqueue(message):
                delivered += 1
            else:
                observe_event_dropped("outbox_full")
                logger.warning(
                    "realtime.event.dropped",
                    extra={
                        "event_name": event.name,
                        "connection_id": session.connection_id,
                        "reason": "outbox_full",
                    },
                )

        observe_event_published(event.name, delivered)
        logger.debug(
            "realtime.event.published",
            extra={
                "event_name": event.name,
                "organization_id": event.organization_id,
                "recipients": delivered,
            },
        )
        return delivered

    def _handle_isolation_violation(self, session: RealtimeSession, event: DomainEvent) -> None:
        violation = RoomIsolationViolation(
            connection_id=session.connection_id,
            session_organization_id=session.organization_id,
            event_organization_id=event.organization_id,
        )
        observe_event_dropped("isolation_violation")
        logger.error(
            "realtime.isolation.violation",
            extra={
                "event_name": event.name,
                "connection_id": session.connection_id,
                "requested_organization_id": event.organization_id,
                "error": str(violation),
            },
        )
        if self.strict_isolation:
            raise violation


event_router = EventRouter()
