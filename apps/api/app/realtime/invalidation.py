from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from app.realtime import events as ev
from app.realtime.connection import ConnectionService, EventSubscription


logger = logging.getLogger("app.realtime.invalidation")

QueryKey = tuple[str, ...]

CALLS_LIST: QueryKey = ("/api/calls",)
DASHBOARD_METRICS: QueryKey = ("/api/dashboard/metrics",)
AGENTS_LIST: QueryKey = ("/api/ai-agents",)
LEADS_LIST: QueryKey = ("/api/leads",)
CAMPAIGNS_LIST: QueryKey = ("/api/campaigns",)
CONTACTS_LIST: QueryKey = ("/api/contacts",)
PHONE_NUMBERS: QueryKey = ("/api/phone-numbers",)
ORGANIZATION: QueryKey = ("/api/organization",)
NOTIFICATIONS: QueryKey = ("/api/notifications",)


def call_detail(call_id: str) -> QueryKey:
    return ("/api/calls", str(call_id))


class QueryCache:
    """In-memory client query cache keyed by query key tuples.

    ``invalidate`` only marks an entry stale; the owner refetches on its own
    schedule. Keys match exactly, so invalidating the calls list does not touch
    any call-detail entry.
    """

    def __init__(self) -> None:
        self._data: dict[QueryKey, Any] = {}
        self._stale: set[QueryKey] = set()
        self.invalidations: list[QueryKey] = []

    def get(self, key: QueryKey, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: QueryKey, value: Any) -> None:
        self._data[key] = value
        self._stale.discard(key)

    def set_query_data(self, key: QueryKey, updater: Callable[[Any], Any]) -> Any:
        value = updater(self._data.get(key))
        self._data[key] = value
        return value

    def invalidate(self, key: QueryKey) -> None:
        self._stale.add(key)
        self.invalidations.append(key)

    def is_stale(self, key: QueryKey) -> bool:
        return key in self._stale


def _payload_id(payload: Any) -> str | None:
    if isinstance(payload, dict):
        value = payload.get("id")
        return str(value) if value is not None else None
    return None


def _static(*keys: QueryKey) -> Callable[[Any], list[QueryKey]]:
    def resolve(payload: Any) -> list[QueryKey]:
        return list(keys)

    return resolve


def _call_updated(payload: Any) -> list[QueryKey]:
    keys = [CALLS_LIST, DASHBOARD_METRICS]
    call_id = _payload_id(payload)
    if call_id is not None:
        keys.append(call_detail(call_id))
    return keys


INVALIDATION_RULES: dict[str, Callable[[Any], list[QueryKey]]] = {
    ev.CALL_CREATED: _static(CALLS_LIST, DASHBOARD_METRICS),
    ev.CALL_UPDATED: _call_updated,
    ev.CALL_DELETED: _static(CALLS_LIST, DASHBOARD_METRICS),
    ev.AGENT_CREATED: _static(AGENTS_LIST, DASHBOARD_METRICS),
    ev.AGENT_UPDATED: _static(AGENTS_LIST, DASHBOARD_METRICS),
    ev.AGENT_DELETED: _static(AGENTS_LIST, DASHBOARD_METRICS),
    ev.LEAD_CREATED: _static(LEADS_LIST),
    ev.LEAD_UPDATED: _static(LEADS_LIST),
    ev.LEAD_DELETED: _static(LEADS_LIST),
    ev.CAMPAIGN_CREATED: _static(CAMPAIGNS_LIST),
    ev.CAMPAIGN_UPDATED: _static(CAMPAIGNS_LIST),
    ev.CAMPAIGN_DELETED: _static(CAMPAIGNS_LIST),
    ev.CONTACT_CREATED: _static(CONTACTS_LIST),
    ev.CONTACT_UPDATED: _static(CONTACTS_LIST),
    ev.PHONE_CREATED: _static(PHONE_NUMBERS),
    ev.PHONE_UPDATED: _static(PHONE_NUMBERS),
    ev.ORGANIZATION_UPDATED: _static(ORGANIZATION),
}


class InvalidationMapper:
    consumer = "query-invalidation"

    def __init__(
        self,
        cache: QueryCache,
        rules: dict[str, Callable[[Any], list[QueryKey]]] | None = None,
        on_notification: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.cache = cache
        self.rules = dict(INVALIDATION_RULES if rules is None else rules)
        self.on_notification = on_notification

    @property
    def event_names(self) -> list[str]:
        return sorted([*self.rules, ev.NOTIFICATION_CREATED])

    def keys_for(self, event_name: str, payload: Any = None) -> list[QueryKey]:
        resolver = self.rules.get(event_name)
        return resolver(payload) if resolver is not None else []

    def handle(self, event_name: str, payload: Any = None) -> list[QueryKey]:
        if event_name == ev.NOTIFICATION_CREATED:
            self._prepend_notification(payload)
            return []

        keys = self.keys_for(event_name, payload)
        for key in keys:
            self.cache.invalidate(key)
        if not keys:
            logger.debug("realtime.invalidation.unmapped", extra={"event_name": event_name})
        return keys

    def bind(self, connection: ConnectionService) -> list[EventSubscription]:
        subscriptions: list[EventSubscription] = []
        for event_name in self.event_names:
            subscriptions.append(
                connection.subscribe(event_name, self._handler_for(event_name), consumer=self.consumer)
            )
        return subscriptions

    def _handler_for(self, event_name: str) -> Callable[[Any], list[QueryKey]]:
        def handler(payload: Any) -> list[QueryKey]:
            return self.handle(event_name, payload)

        return handler

    def _prepend_notification(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            logger.warning("realtime.invalidation.bad_notification", extra={"event_name": ev.NOTIFICATION_CREATED})
            return
        self.cache.set_query_data(NOTIFICATIONS, lambda current: [payload, *(current or [])])
        if self.on_notification is not None and payload.get("type") != "update":
            self.on_notification(payload)
