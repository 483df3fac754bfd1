from __future__ import annotations


class RealtimeError(Exception):
    """Base error for the realtime event layer."""


class TransportError(RealtimeError):
    """Raised when a client transport cannot connect or loses its connection."""


class MessageFormatError(RealtimeError):
    """Raised when a frame on the wire is not a valid event envelope."""


class RoomIsolationViolation(RealtimeError):
    """Raised when an event is about to reach a session outside the event's organization."""

    def __init__(self, connection_id: str, session_organization_id: str, event_organization_id: str) -> None:
        self.connection_id = connection_id
        self.session_organization_id = session_organization_id
        self.event_organization_id = event_organization_id
        super().__init__(
            f"Session {connection_id} of organization '{session_organization_id}' "
            f"was selected for an event of organization '{event_organization_id}'"
        )
