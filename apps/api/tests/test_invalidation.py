from __future__ import annotations

import asyncio
from typing import Any

import pytest

from app.realtime.connection import ClientIdentity, ConnectionService
from app.realtime.events import EventMessage
from app.realtime.invalidation import (
    AGENTS_LIST,
    CALLS_LIST,
    DASHBOARD_METRICS,
    LEADS_LIST,
    NOTIFICATIONS,
    ORGANIZATION,
    InvalidationMapper,
    QueryCache,
    call_detail,
)


@pytest.fixture()
def cache() -> QueryCache:
    return QueryCache()


def test_call_updated_invalidates_list_metrics_and_detail(cache: QueryCache) -> None:
    mapper = InvalidationMapper(cache)

    keys = mapper.handle("call:updated", {"id": "c1"})

    assert keys == [CALLS_LIST, DASHBOARD_METRICS, call_detail("c1")]
    assert cache.invalidations == [CALLS_LIST, DASHBOARD_METRICS, ("/api/calls", "c1")]
    assert not cache.is_stale(call_detail("c2"))


def test_call_created_does_not_touch_detail_entries(cache: QueryCache) -> None:
    cache.set(call_detail("c1"), {"id": "c1"})
    mapper = InvalidationMapper(cache)

    mapper.handle("call:created", {"id": "c1"})

    assert cache.invalidations == [CALLS_LIST, DASHBOARD_METRICS]
    assert not cache.is_stale(call_detail("c1"))


@pytest.mark.parametrize(
    ("event_name", "expected"),
    [
        ("agent:deleted", [AGENTS_LIST, DASHBOARD_METRICS]),
        ("lead:updated", [LEADS_LIST]),
        ("organization:updated", [ORGANIZATION]),
        ("credits:updated", []),
        ("unknown:event", []),
    ],
)
def test_rule_table(cache: QueryCache, event_name: str, expected: list[tuple[str, ...]]) -> None:
    assert InvalidationMapper(cache).handle(event_name, {"id": "x"}) == expected


def test_notification_is_prepended_and_surfaced(cache: QueryCache) -> None:
    cache.set(NOTIFICATIONS, [{"id": "old"}])
    surfaced: list[dict[str, Any]] = []
    mapper = InvalidationMapper(cache, on_notification=surfaced.append)

    assert mapper.handle("notification:created", {"id": "new", "type": "lead_assigned"}) == []

    assert cache.get(NOTIFICATIONS) == [{"id": "new", "type": "lead_assigned"}, {"id": "old"}]
    assert surfaced == [{"id": "new", "type": "lead_assigned"}]
    assert cache.invalidations == []


def test_update_notifications_are_not_surfaced(cache: QueryCache) -> None:
    surfaced: list[dict[str, Any]] = []
    mapper = InvalidationMapper(cache, on_notification=surfaced.append)

    mapper.handle("notification:created", {"id": "n1", "type": "update"})

    assert cache.get(NOTIFICATIONS) == [{"id": "n1", "type": "update"}]
    assert surfaced == []


def test_malformed_notification_payload_is_ignored(cache: QueryCache) -> None:
    mapper = InvalidationMapper(cache)

    mapper.handle("notification:created", "not-a-dict")

    assert cache.get(NOTIFICATIONS) is None


class QueueTransport:
    def __init__(self) -> None:
        self.incoming: asyncio.Queue[EventMessage] = asyncio.Queue()

    async def connect(self) -> None:
        return None

    async def emit(self, event: str, data: Any = None) -> None:
        return None

    async def receive(self) -> EventMessage:
        return await self.incoming.get()

    async def close(self) -> None:
        return None


@pytest.mark.asyncio
async def test_bound_mapper_invalidates_on_received_events(cache: QueryCache) -> None:
    transports: list[QueueTransport] = []

    def factory(identity: ClientIdentity) -> QueueTransport:
        transports.append(QueueTransport())
        return transports[-1]

    service = ConnectionService(factory)
    mapper = InvalidationMapper(cache)
    subscriptions = mapper.bind(service)
    assert {subscription.event_name for subscription in subscriptions} == set(mapper.event_names)
    assert mapper.bind(service) == subscriptions

    await service.set_identity(ClientIdentity(user_id="u1", organization_id="org-1"))
    for _ in range(50):
        if transports and service.is_connected:
            break
        await asyncio.sleep(0)

    await transports[0].incoming.put(EventMessage(event="lead:created", data={"id": "l1"}))
    for _ in range(50):
        if cache.invalidations:
            break
        await asyncio.sleep(0)

    assert cache.invalidations == [LEADS_LIST]
    await service.disconnect()

