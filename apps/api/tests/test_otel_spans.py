from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.assignments.analyzer import TranscriptAnalyzer
from app.assignments.api import get_assignment_pipeline
from app.assignments.service import TranscriptAssignmentPipeline
from app.core.auth import ActorUser, get_current_actor
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


class StaticLLMClient:
    def __init__(self, response: str) -> None:
        self.response = response

    async def complete(self, *, system_prompt: str, user_prompt: str, api_key: str | None = None) -> str:
        return self.response


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("pulse-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            organization_id="org-otel",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def override_pipeline() -> TranscriptAssignmentPipeline:
        payload = '[{"action": "create", "pipelineStage": "qualified", "leadData": {"name": "Traced Lead"}}]'
        return TranscriptAssignmentPipeline(analyzer=TranscriptAnalyzer(client=StaticLLMClient(payload)))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    app.dependency_overrides[get_assignment_pipeline] = override_pipeline
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/api/leads", json={"name": "Span Lead"}, headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_analysis_and_apply_spans_carry_counts(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/transcripts/analyze",
        json={"transcript": "Caller wants a proposal next week.", "apply": True},
        headers={"X-Correlation-Id": "otel-analysis-1"},
    )
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    analyze_spans = [span for span in spans if span.name == "transcript.analyze"]
    apply_spans = [span for span in spans if span.name == "assignments.apply"]
    assert analyze_spans
    assert apply_spans

    assert analyze_spans[-1].attributes.get("analysis.outcome") == "success"
    assert analyze_spans[-1].attributes.get("assignments.kept") == 1
    assert analyze_spans[-1].attributes.get("correlation_id") == "otel-analysis-1"
    assert apply_spans[-1].attributes.get("assignments.applied") == 1
    assert apply_spans[-1].attributes.get("assignments.failed") == 0
