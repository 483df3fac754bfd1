from __future__ import annotations

from collections import deque
from typing import Any

from app.context import get_correlation_id
from app.core.config import get_settings
from app.realtime.router import event_router

published_events: deque[dict[str, Any]] = deque(maxlen=get_settings().event_log_size)


def publish(organization_id: str, event_name: str, payload: Any = None) -> None:
    """Record a domain event and route it to the organization's room."""
    published_events.append(
        {
            "organization_id": str(organization_id),
            "event_name": event_name,
            "payload": payload,
            "correlation_id": get_correlation_id(),
        }
    )
    event_router.publish(str(organization_id), event_name, payload)
