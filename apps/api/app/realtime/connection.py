from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from app.core.config import get_settings
from app.realtime.errors import TransportError
from app.realtime.events import JOIN_ORGANIZATION, LEAVE_ORGANIZATION, EventMessage
from app.realtime.transport import Transport, WebSocketTransport


logger = logging.getLogger("app.realtime.connection")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ClientIdentity:
    user_id: str
    organization_id: str
    token: str = field(default="", repr=False, compare=False)


TransportFactory = Callable[[ClientIdentity], Transport]
EventCallback = Callable[[Any], Any]
StateListener = Callable[[ConnectionState], None]


class EventSubscription:
    """Stable handle for one (event, consumer) pair.

    The callback lives in a replaceable cell so consumers can swap it on every
    render without touching the transport listener table.
    """

    def __init__(self, service: ConnectionService, event_name: str, consumer: str, callback: EventCallback) -> None:
        self.event_name = event_name
        self.consumer = consumer
        self._service = service
        self._callback = callback
        self.active = True

    @property
    def callback(self) -> EventCallback:
        return self._callback

    def update(self, callback: EventCallback) -> None:
        self._callback = callback

    def deliver(self, data: Any) -> Any:
        return self._callback(data)

    def unsubscribe(self) -> None:
        if self.active:
            self._service._remove_subscription(self)
            self.active = False


class ConnectionService:
    """Client-side connection manager for one client session.

    Construct one per session and pass it to whatever needs realtime events.
    State machine: DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING ->
    CONNECTED | DISCONNECTED. Until the first handshake succeeds the state stays
    CONNECTING, even across failed attempts. Transport failures never escape:
    they drive the reconnect loop, which retries forever with a delay doubling from
    ``reconnect_delay`` up to ``reconnect_delay_max``.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 5.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        if reconnect_delay <= 0 or reconnect_delay_max < reconnect_delay:
            raise ValueError("reconnect delays must satisfy 0 < reconnect_delay <= reconnect_delay_max")
        self._transport_factory = transport_factory
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self._sleep = sleep
        self._state = ConnectionState.DISCONNECTED
        self._identity: ClientIdentity | None = None
        self._transport: Transport | None = None
        self._task: asyncio.Task[None] | None = None
        self._subscriptions: dict[tuple[str, str], EventSubscription] = {}
        self._listeners: dict[str, list[EventSubscription]] = {}
        self._bound_transport: Transport | None = None
        self._state_listeners: list[StateListener] = []
        self._handler_tasks: set[asyncio.Task[Any]] = set()
        self.binding_count = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def identity(self) -> ClientIdentity | None:
        return self._identity

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def reconnect_delay_for(self, attempt: int) -> float:
        return min(self.reconnect_delay * (2 ** max(attempt - 1, 0)), self.reconnect_delay_max)

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    async def set_identity(self, identity: ClientIdentity | None) -> None:
        if identity is None:
            await self.disconnect()
            return
        if identity == self._identity and self._state is not ConnectionState.DISCONNECTED:
            return
        if self._state is not ConnectionState.DISCONNECTED:
            await self.disconnect()

        self._identity = identity
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(self._run(identity), name=f"realtime-connection:{identity.organization_id}")

    async def connect(self, identity: ClientIdentity) -> None:
        await self.set_identity(identity)

    async def disconnect(self) -> None:
        identity = self._identity
        transport = self._transport
        was_connected = self._state is ConnectionState.CONNECTED
        task = self._task

        self._task = None
        self._identity = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        if transport is not None:
            if was_connected and identity is not None:
                try:
                    await transport.emit(LEAVE_ORGANIZATION, identity.organization_id)
                except TransportError as exc:
                    logger.info("realtime.connection.leave_failed", extra={"error": str(exc)})
            await self._close_quietly(transport)
        self._transport = None
        self._set_state(ConnectionState.DISCONNECTED)

    def subscribe(self, event_name: str, callback: EventCallback, *, consumer: str = "default") -> EventSubscription:
        key = (event_name, consumer)
        existing = self._subscriptions.get(key)
        if existing is not None:
            existing.update(callback)
            return existing

        subscription = EventSubscription(self, event_name, consumer, callback)
        self._subscriptions[key] = subscription
        if self._bound_transport is not None:
            self._listeners.setdefault(event_name, []).append(subscription)
        return subscription

    def subscriptions(self, event_name: str | None = None) -> list[EventSubscription]:
        return [item for item in self._subscriptions.values() if event_name is None or item.event_name == event_name]

    def listener_count(self, event_name: str) -> int:
        return len(self._listeners.get(event_name, []))

    def _remove_subscription(self, subscription: EventSubscription) -> None:
        key = (subscription.event_name, subscription.consumer)
        if self._subscriptions.get(key) is subscription:
            del self._subscriptions[key]
        listeners = self._listeners.get(subscription.event_name)
        if listeners and subscription in listeners:
            listeners.remove(subscription)

    def _bind_listeners(self, transport: Transport) -> None:
        if transport is self._bound_transport:
            return
        listeners: dict[str, list[EventSubscription]] = {}
        for subscription in self._subscriptions.values():
            listeners.setdefault(subscription.event_name, []).append(subscription)
        self._listeners = listeners
        self._bound_transport = transport
        self.binding_count += 1

    async def _run(self, identity: ClientIdentity) -> None:
        attempt = 0
        connected_once = False
        while True:
            transport = self._transport_factory(identity)
            self._transport = transport
            self._bind_listeners(transport)
            try:
                await transport.connect()
            except TransportError as exc:
                attempt += 1
                await self._wait_before_retry(attempt, exc, reconnecting=connected_once)
                continue

            attempt = 0
            connected_once = True
            self._set_state(ConnectionState.CONNECTED)
            try:
                await transport.emit(JOIN_ORGANIZATION, identity.organization_id)
                while True:
                    message = await transport.receive()
                    self._dispatch(message)
            except TransportError as exc:
                await self._close_quietly(transport)
                attempt += 1
                await self._wait_before_retry(attempt, exc, reconnecting=True)

    async def _wait_before_retry(self, attempt: int, exc: TransportError, *, reconnecting: bool) -> None:
        delay = self.reconnect_delay_for(attempt)
        if reconnecting:
            self._set_state(ConnectionState.RECONNECTING)
        logger.info(
            "realtime.connection.retry",
            extra={"attempt": attempt, "delay_seconds": delay, "error": str(exc)},
        )
        await self._sleep(delay)

    def _dispatch(self, message: EventMessage) -> None:
        for subscription in list(self._listeners.get(message.event, ())):
            try:
                result = subscription.deliver(message.data)
            except Exception:
                logger.exception(
                    "realtime.connection.handler_failed",
                    extra={"event_name": message.event},
                )
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task[Any]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("realtime.connection.handler_failed", exc_info=exc)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        logger.info("realtime.connection.state", extra={"state": state.value})
        if not self._state_listeners:
            return
        loop = asyncio.get_running_loop()
        for listener in list(self._state_listeners):
            loop.call_soon(listener, state)

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.close()
        except TransportError as exc:
            logger.debug("realtime.connection.close_failed", extra={"error": str(exc)})


def websocket_transport_factory(url: str) -> TransportFactory:
    def factory(identity: ClientIdentity) -> Transport:
        return WebSocketTransport(url, identity.token)

    return factory


def create_connection_service(url: str) -> ConnectionService:
    settings = get_settings()
    return ConnectionService(
        websocket_transport_factory(url),
        reconnect_delay=settings.realtime_reconnect_delay_seconds,
        reconnect_delay_max=settings.realtime_reconnect_delay_max_seconds,
    )
