from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import ActorUser, get_current_actor
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.logging import JsonLogFormatter
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            organization_id="org-log",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _token(organization_id: str) -> str:
    settings = get_settings()
    return jwt.encode(
        {"sub": "user-1", "roles": ["user"], "org_id": organization_id},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/leads/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_domain_logs_carry_correlation_and_lead_id(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.post(
        "/api/leads",
        json={"name": "Logged Lead"},
        headers={"X-Correlation-Id": "abc-456", "Authorization": f"Bearer {_token('org-log')}"},
    )
    assert response.status_code == 201

    records = [record for record in caplog.records if record.name == "app.crm" and record.getMessage() == "crm.lead.created"]
    assert records
    assert getattr(records[-1], "lead_id", None) == response.json()["id"]
    assert getattr(records[-1], "correlation_id", None) == "abc-456"
    assert getattr(records[-1], "organization_id", None) == "org-log"


def test_json_formatter_emits_known_fields_and_context() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.realtime.router",
            "levelname": "WARNING",
            "msg": "realtime.event.dropped",
            "event_name": "call:updated",
            "connection_id": "conn-1",
            "reason": "outbox_full",
            "not_a_known_field": "hidden",
            "correlation_id": "corr-9",
            "organization_id": "org-9",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["msg"] == "realtime.event.dropped"
    assert payload["correlation_id"] == "corr-9"
    assert payload["organization_id"] == "org-9"
    assert payload["fields"] == {"event_name": "call:updated", "connection_id": "conn-1", "reason": "outbox_full"}
    assert "not_a_known_field" not in json.dumps(payload)
