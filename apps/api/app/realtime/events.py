from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from app.realtime.errors import MessageFormatError

JOIN_ORGANIZATION = "join:organization"
LEAVE_ORGANIZATION = "leave:organization"
ORGANIZATION_JOINED = "organization:joined"

CALL_CREATED = "call:created"
CALL_UPDATED = "call:updated"
CALL_DELETED = "call:deleted"
AGENT_CREATED = "agent:created"
AGENT_UPDATED = "agent:updated"
AGENT_DELETED = "agent:deleted"
LEAD_CREATED = "lead:created"
LEAD_UPDATED = "lead:updated"
LEAD_DELETED = "lead:deleted"
CAMPAIGN_CREATED = "campaign:created"
CAMPAIGN_UPDATED = "campaign:updated"
CAMPAIGN_DELETED = "campaign:deleted"
CONTACT_CREATED = "contact:created"
CONTACT_UPDATED = "contact:updated"
PHONE_CREATED = "phone:created"
PHONE_UPDATED = "phone:updated"
ORGANIZATION_UPDATED = "organization:updated"
CREDITS_UPDATED = "credits:updated"
METRICS_UPDATED = "metrics:updated"
NOTIFICATION_CREATED = "notification:created"

CLIENT_EVENTS = frozenset({JOIN_ORGANIZATION, LEAVE_ORGANIZATION})

SERVER_EVENTS = frozenset(
    {
        ORGANIZATION_JOINED,
        CALL_CREATED,
        CALL_UPDATED,
        CALL_DELETED,
        AGENT_CREATED,
        AGENT_UPDATED,
        AGENT_DELETED,
        LEAD_CREATED,
        LEAD_UPDATED,
        LEAD_DELETED,
        CAMPAIGN_CREATED,
        CAMPAIGN_UPDATED,
        CAMPAIGN_DELETED,
        CONTACT_CREATED,
        CONTACT_UPDATED,
        PHONE_CREATED,
        PHONE_UPDATED,
        ORGANIZATION_UPDATED,
        CREDITS_UPDATED,
        METRICS_UPDATED,
        NOTIFICATION_CREATED,
    }
)


def room_name(organization_id: str) -> str:
    return f"org:{organization_id}"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    organization_id: str
    payload: Any = field(default=None)


class EventMessage(BaseModel):
    """A single frame on the websocket: ``{"event": ..., "data": ...}``."""

    event: str
    data: Any = None

    def encode(self) -> str:
        return self.model_dump_json()

    @classmethod
    def decode(cls, raw: str | bytes) -> EventMessage:
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MessageFormatError("frame is not valid JSON") from exc
        if not isinstance(parsed, dict):
            raise MessageFormatError("frame must be a JSON object")
        try:
            message = cls.model_validate(parsed)
        except ValidationError as exc:
            raise MessageFormatError("frame has no event name") from exc
        if not message.event:
            raise MessageFormatError("frame has an empty event name")
        return message

    @classmethod
    def from_domain_event(cls, event: DomainEvent) -> EventMessage:
        return cls(event=event.name, data=event.payload)
