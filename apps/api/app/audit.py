from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.config import get_settings

# Oldest entries fall off once the buffer is full.
audit_entries: deque[dict[str, Any]] = deque(maxlen=get_settings().audit_log_size)


def record(
    actor_user_id: str,
    organization_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    resolved_correlation_id = correlation_id or get_correlation_id()
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id,
            "organization_id": str(organization_id),
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "action": action,
            "before": before,
            "after": after,
            "correlation_id": resolved_correlation_id,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )


def entries_for(
    organization_id: str,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Newest-first audit entries for one organization.

    Entries belonging to other organizations are never returned, whatever the filters.
    """
    matches: list[dict[str, Any]] = []
    for entry in reversed(audit_entries):
        if entry["organization_id"] != str(organization_id):
            continue
        if entity_type is not None and entry["entity_type"] != entity_type:
            continue
        if entity_id is not None and entry["entity_id"] != str(entity_id):
            continue
        if action is not None and entry["action"] != action:
            continue
        matches.append(entry)
        if len(matches) >= limit:
            break
    return matches
