from app.realtime.connection import ClientIdentity, ConnectionService, ConnectionState, EventSubscription
from app.realtime.errors import MessageFormatError, RealtimeError, RoomIsolationViolation, TransportError
from app.realtime.events import DomainEvent, EventMessage, room_name
from app.realtime.invalidation import INVALIDATION_RULES, InvalidationMapper, QueryCache
from app.realtime.rooms import RealtimeSession, RoomRegistry
from app.realtime.router import EventRouter, event_router
from app.realtime.transport import Transport, WebSocketTransport

__all__ = [
    "ClientIdentity",
    "ConnectionService",
    "ConnectionState",
    "EventSubscription",
    "MessageFormatError",
    "RealtimeError",
    "RoomIsolationViolation",
    "TransportError",
    "DomainEvent",
    "EventMessage",
    "room_name",
    "INVALIDATION_RULES",
    "InvalidationMapper",
    "QueryCache",
    "RealtimeSession",
    "RoomRegistry",
    "EventRouter",
    "event_router",
    "Transport",
    "WebSocketTransport",
]
