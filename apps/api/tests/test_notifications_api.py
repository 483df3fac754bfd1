from __future__ import annotations

import uuid
from collections.abc import Generator

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
from app.notifications.schemas import NotificationCreate
from app.notifications.service import (
    create_call_notification,
    create_lead_assigned_notification,
    notification_service,
)

ORG = "org-notify"
USER = "user-notify"


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    audit.audit_entries.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor() -> ActorUser:
        return ActorUser(user_id=USER, organization_id=ORG)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _notify(session: Session, *, organization_id: str = ORG, user_id: str = USER, title: str = "Heads up") -> uuid.UUID:
    created = notification_service.create(
        session,
        NotificationCreate(
            organization_id=organization_id,
            user_id=user_id,
            type="update",
            title=title,
            message="Something changed",
        ),
    )
    return created.id


def test_create_publishes_notification_created_to_owner_organization(db_session: Session) -> None:
    created = create_lead_assigned_notification(db_session, USER, ORG, "lead-1", "Ana", "qualified")

    assert created.read is False
    assert created.message == 'Lead "Ana" assigned to qualified pipeline'
    assert created.metadata == {"leadId": "lead-1", "pipelineStage": "qualified"}

    published = [item for item in events.published_events if item["event_name"] == "notification:created"]
    assert len(published) == 1
    assert published[0]["organization_id"] == ORG
    assert published[0]["payload"]["id"] == str(created.id)


def test_call_notification_rejects_unknown_direction(db_session: Session) -> None:
    with pytest.raises(ValueError):
        create_call_notification(db_session, USER, ORG, "call-1", "sideways")

    inbound = create_call_notification(db_session, USER, ORG, "call-1", "inbound", "Bea")
    assert inbound.title == "Incoming Call"
    assert inbound.message == "New incoming call from Bea"


def test_list_filters_to_current_user_and_unread(client: TestClient, db_session: Session) -> None:
    first = _notify(db_session, title="First")
    _notify(db_session, title="Second")
    _notify(db_session, user_id="someone-else", title="Not mine")
    notification_service.mark_read(db_session, ActorUser(user_id=USER, organization_id=ORG), first)

    everything = client.get("/api/notifications")
    assert everything.status_code == 200
    assert {item["title"] for item in everything.json()} == {"First", "Second"}

    unread = client.get("/api/notifications", params={"unread_only": True})
    assert [item["title"] for item in unread.json()] == ["Second"]

    count = client.get("/api/notifications/unread-count")
    assert count.json() == {"count": 1}


def test_mark_read_is_idempotent(client: TestClient, db_session: Session) -> None:
    notification_id = _notify(db_session)

    first = client.patch(f"/api/notifications/{notification_id}/read")
    second = client.patch(f"/api/notifications/{notification_id}/read")

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["read"] is True
    assert second.json() == first.json()


def test_mark_all_read_counts_only_unread(client: TestClient, db_session: Session) -> None:
    ids = [_notify(db_session, title=f"Item {index}") for index in range(3)]
    client.patch(f"/api/notifications/{ids[0]}/read")

    response = client.post("/api/notifications/read-all")
    assert response.status_code == 200
    assert response.json() == {"success": True, "count": 2, "message": "Marked 2 notifications as read"}

    again = client.post("/api/notifications/read-all")
    assert again.json()["count"] == 0
    assert client.get("/api/notifications/unread-count").json() == {"count": 0}


def test_delete_records_audit_entry(client: TestClient, db_session: Session) -> None:
    notification_id = _notify(db_session)

    response = client.delete(f"/api/notifications/{notification_id}")
    assert response.status_code == 200
    assert response.json() == {"status": "deleted"}
    assert client.get("/api/notifications").json() == []

    entry = audit.audit_entries[-1]
    assert entry["entity_type"] == "notification"
    assert entry["entity_id"] == str(notification_id)
    assert entry["action"] == "delete"
    assert entry["after"] is None


def test_other_tenant_notifications_are_not_found(client: TestClient, db_session: Session) -> None:
    foreign_id = _notify(db_session, organization_id="org-other")

    patched = client.patch(f"/api/notifications/{foreign_id}/read")
    assert patched.status_code == 404
    assert patched.json()["code"] == "notification_mark_read_failed"
    assert patched.json()["message"] == "notification not found"

    deleted = client.delete(f"/api/notifications/{foreign_id}")
    assert deleted.status_code == 404
    assert deleted.json()["code"] == "notification_delete_failed"
