from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import ActorUser, get_current_actor
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.realtime.router import event_router


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_audit_entries(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "auditor-a": ActorUser(user_id="auditor-a", organization_id="org-a", roles={"crm.audit.read"}),
        "writer-a": ActorUser(user_id="writer-a", organization_id="org-a", roles={"user"}),
        "auditor-b": ActorUser(user_id="auditor-b", organization_id="org-b", roles={"crm.audit.read"}),
    }
    state = {"current": "writer-a"}

    def override_get_current_actor() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_audit_list_is_scoped_to_the_callers_organization(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    created = test_client.post("/api/leads", json={"name": "Audit Lead"})
    assert created.status_code == 201
    lead_id = created.json()["id"]
    assert test_client.patch(f"/api/leads/{lead_id}", json={"company": "Acme"}).status_code == 200

    set_actor("auditor-a")
    response = test_client.get("/api/audit", params={"entity_type": "crm.lead", "entity_id": lead_id})
    assert response.status_code == 200
    body = response.json()
    assert [entry["action"] for entry in body] == ["update", "create"]
    assert body[1]["actor_user_id"] == "writer-a"
    assert body[1]["after"]["name"] == "Audit Lead"

    only_creates = test_client.get("/api/audit", params={"action": "create"}).json()
    assert [entry["entity_id"] for entry in only_creates] == [lead_id]

    set_actor("auditor-b")
    assert test_client.get("/api/audit").json() == []


def test_audit_list_requires_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.get("/api/audit")

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "crm_audit_list_failed"
    assert body["message"] == "Missing permission: crm.audit.read"


def test_entries_for_respects_limit_and_returns_newest_first() -> None:
    for index in range(5):
        audit.record("user-a", "org-a", "crm.lead", f"lead-{index}", "create", None, {"n": index})
    audit.record("user-b", "org-b", "crm.lead", "lead-x", "create", None, None)

    entries = audit.entries_for("org-a", limit=3)

    assert [entry["entity_id"] for entry in entries] == ["lead-4", "lead-3", "lead-2"]
    assert all(entry["organization_id"] == "org-a" for entry in audit.entries_for("org-a"))


def test_audit_trail_drops_oldest_entries_when_full() -> None:
    capacity = audit.audit_entries.maxlen
    assert capacity == get_settings().audit_log_size

    for index in range(capacity + 5):
        audit.record("user-a", "org-a", "crm.lead", f"lead-{index}", "create", None, None)

    assert len(audit.audit_entries) == capacity
    assert audit.audit_entries[0]["entity_id"] == "lead-5"
    assert audit.audit_entries[-1]["entity_id"] == f"lead-{capacity + 4}"


def test_published_event_log_drops_oldest_entries_when_full(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(event_router, "_loop", None)
    capacity = events.published_events.maxlen
    assert capacity == get_settings().event_log_size

    for index in range(capacity + 3):
        events.publish("org-a", "lead:updated", {"id": f"lead-{index}"})

    assert len(events.published_events) == capacity
    assert events.published_events[0]["payload"] == {"id": "lead-3"}
