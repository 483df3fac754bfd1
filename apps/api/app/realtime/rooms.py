from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.realtime.events import EventMessage, room_name


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class RealtimeSession:
    """One live websocket connection of an authenticated user."""

    connection_id: str
    user_id: str
    organization_id: str
    connected_at: datetime = field(default_factory=utcnow)
    outbox_size: int = 256
    outbox: asyncio.Queue[EventMessage] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.outbox = asyncio.Queue(maxsize=self.outbox_size)

    def enqueue(self, message: EventMessage) -> bool:
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True


class RoomRegistry:
    """Room membership table.

    Mutated only from the event loop thread, in response to the owning
    session's own lifecycle (join, leave, disconnect).
    """

    def __init__(self) -> None:
        self._sessions: dict[str, RealtimeSession] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._membership: dict[str, str] = {}

    def register(self, session: RealtimeSession) -> None:
        self._sessions[session.connection_id] = session

    def unregister(self, connection_id: str) -> RealtimeSession | None:
        current = self._membership.get(connection_id)
        if current is not None:
            self.leave(connection_id, current)
        return self._sessions.pop(connection_id, None)

    def join(self, connection_id: str, organization_id: str) -> bool:
        """Put the session in the organization's room; returns False when it was already there."""
        if connection_id not in self._sessions:
            raise KeyError(connection_id)
        current = self._membership.get(connection_id)
        if current == organization_id:
            return False
        if current is not None:
            self.leave(connection_id, current)
        self._rooms[room_name(organization_id)].add(connection_id)
        self._membership[connection_id] = organization_id
        return True

    def leave(self, connection_id: str, organization_id: str) -> bool:
        if self._membership.get(connection_id) != organization_id:
            return False
        room = room_name(organization_id)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        del self._membership[connection_id]
        return True

    def members(self, organization_id: str) -> list[RealtimeSession]:
        connection_ids = self._rooms.get(room_name(organization_id), set())
        return [self._sessions[item] for item in sorted(connection_ids) if item in self._sessions]

    def room_of(self, connection_id: str) -> str | None:
        return self._membership.get(connection_id)

    def get(self, connection_id: str) -> RealtimeSession | None:
        return self._sessions.get(connection_id)

    def session_count(self) -> int:
        return len(self._sessions)

    def clear(self) -> None:
        self._sessions.clear()
        self._rooms.clear()
        self._membership.clear()
