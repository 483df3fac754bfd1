from __future__ import annotations

import json
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.assignments.analyzer import OpenAIChatClient, TranscriptAnalyzer
from app.assignments.api import get_assignment_pipeline
from app.assignments.applier import AssignmentApplier
from app.assignments.service import TranscriptAssignmentPipeline
from app.core.auth import ActorUser, get_current_actor
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def llm_response() -> dict[str, str]:
    return {"body": '{"assignments": []}'}


@pytest.fixture()
def client(db_session: Session, llm_response: dict[str, str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor() -> ActorUser:
        return ActorUser(user_id="user-t", organization_id="org-t")

    def override_pipeline() -> TranscriptAssignmentPipeline:
        return TranscriptAssignmentPipeline(
            analyzer=TranscriptAnalyzer(client=StaticLLMClient(llm_response["body"])),
            applier=AssignmentApplier(notify=False),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    app.dependency_overrides[get_assignment_pipeline] = override_pipeline
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_analyze_applies_assignments_and_reports_failures(client: TestClient, llm_response: dict[str, str]) -> None:
    llm_response["body"] = json.dumps(
        {
            "assignments": [
                {"action": "create", "pipelineStage": "contacted", "leadData": {"name": "Jane Doe"}, "reason": "asked for a callback"},
                {"action": "update", "pipelineStage": "qualified"},
                {"action": "bogus", "pipelineStage": "x"},
            ]
        }
    )

    response = client.post("/api/transcripts/analyze", json={"transcript": "Jane Doe asked for a callback."})
    assert response.status_code == 200
    body = response.json()

    assert [item["action"] for item in body["assignments"]] == ["create", "update"]
    assert len(body["applied"]) == 1
    assert body["applied"][0]["lead"]["name"] == "Jane Doe"
    assert body["applied"][0]["lead"]["notes"] == "AI: asked for a callback"
    assert body["failed"] == [{"index": 1, "action": "update", "lead_id": None, "reason": "leadId is required for update"}]

    leads = client.get("/api/leads", params={"source": "ai_assignment"}).json()
    assert [lead["name"] for lead in leads] == ["Jane Doe"]


def test_analyze_without_apply_returns_assignments_only(client: TestClient, llm_response: dict[str, str]) -> None:
    llm_response["body"] = json.dumps([{"action": "create", "pipelineStage": "new", "leadData": {"name": "Dry Run"}}])

    response = client.post("/api/transcripts/analyze", json={"transcript": "Dry run call.", "apply": False})

    assert response.status_code == 200
    assert response.json()["applied"] == []
    assert client.get("/api/leads").json() == []


def test_unparseable_model_output_is_a_422(client: TestClient, llm_response: dict[str, str]) -> None:
    llm_response["body"] = "I could not decide."

    response = client.post("/api/transcripts/analyze", json={"transcript": "Unclear call."})

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "transcript_parse_failed"
    assert body["message"] == "Failed to parse AI response"
    assert client.get("/api/leads").json() == []


def test_blank_transcript_is_rejected(client: TestClient) -> None:
    response = client.post("/api/transcripts/analyze", json={"transcript": "   "})

    assert response.status_code == 422
    assert response.json()["code"] == "transcript_analysis_failed"


def test_missing_provider_key_is_a_503(client: TestClient) -> None:
    app.dependency_overrides[get_assignment_pipeline] = lambda: TranscriptAssignmentPipeline(
        analyzer=TranscriptAnalyzer(client=OpenAIChatClient())
    )

    response = client.post("/api/transcripts/analyze", json={"transcript": "Any call."})

    assert response.status_code == 503
    assert response.json()["code"] == "transcript_analyzer_not_configured"
