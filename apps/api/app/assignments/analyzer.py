"""
Transcript analysis.

Turns a raw call transcript into pipeline assignments by asking a chat model for
structured JSON, then normalizing and validating what comes back. Malformed
entries are dropped one by one so a single bad item never discards the batch.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Sequence
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from app.assignments.errors import (
    AnalysisError,
    AnalysisNotConfiguredError,
    AnalysisParseError,
    AnalysisProviderError,
    AnalysisValidationWarning,
)
from app.assignments.schemas import LeadData, PipelineAssignment
from app.core.config import get_settings
from app.crm.service import DEFAULT_PIPELINE_STAGES
from app.metrics import observe_transcript_analysis
from app.otel import annotate_current_span

logger = logging.getLogger("app.assignments.analyzer")
tracer = trace.get_tracer("app.assignments")

VALID_ACTIONS = ("create", "update", "delete")

SYSTEM_PROMPT_TEMPLATE = """You are an AI assistant that analyzes phone call transcripts to assign leads to appropriate pipeline stages.

Available pipeline stages: {stages}

Only use stage names from the list above.

Based on the transcript, determine:
1. If a new lead should be created (extract name, contact info, company)
2. Which pipeline stage the lead belongs to based on conversation outcome
3. If an existing lead should be updated or deleted

Respond with a JSON object of the form {{"assignments": [...]}}. Each assignment must have:
- action: "create", "update", or "delete"
- pipelineStage: the stage name
- reason: brief explanation
- leadData (required for create, optional for update): {{"name": string, "email"?: string, "phone"?: string, "company"?: string, "notes"?: string}}
- leadId (required for update/delete): the existing lead id if known from context"""

USER_PROMPT_TEMPLATE = """Analyze this call transcript and provide pipeline assignment recommendations:

{transcript}

Return only valid JSON."""


def build_system_prompt(stage_names: Sequence[str] | None = None) -> str:
    stages = [name.strip() for name in (stage_names or ()) if name and name.strip()]
    if not stages:
        stages = list(DEFAULT_PIPELINE_STAGES)
    return SYSTEM_PROMPT_TEMPLATE.format(stages=", ".join(stages))


def build_user_prompt(transcript: str) -> str:
    return USER_PROMPT_TEMPLATE.format(transcript=transcript)


class LLMClient(Protocol):
    async def complete(self, *, system_prompt: str, user_prompt: str, api_key: str | None = None) -> str:
        ...


class OpenAIChatClient:
    """JSON-mode chat completions through the OpenAI async client."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_model
        self.temperature = settings.openai_temperature if temperature is None else temperature
        self.timeout = settings.openai_timeout_seconds if timeout is None else timeout

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def complete(self, *, system_prompt: str, user_prompt: str, api_key: str | None = None) -> str:
        resolved_key = api_key or self.api_key
        if not resolved_key:
            raise AnalysisNotConfiguredError("OpenAI API key is not configured")

        client = AsyncOpenAI(api_key=resolved_key, timeout=self.timeout)
        try:
            completion = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self.temperature,
            )
        except openai.OpenAIError as exc:
            raise AnalysisProviderError(str(exc)) from exc
        finally:
            await client.close()

        if not completion.choices:
            raise AnalysisProviderError("completion returned no choices")
        return completion.choices[0].message.content or "{}"


def normalize_response(response: Any) -> list[Any]:
    """Accept `{"assignments": [...]}`, a bare array, or a single assignment object."""
    if isinstance(response, dict):
        assignments = response.get("assignments")
        if isinstance(assignments, list):
            return list(assignments)
        if response.get("action"):
            return [response]
        return []
    if isinstance(response, list):
        return list(response)
    return []


LEAD_DATA_FIELDS = ("name", "email", "phone", "company", "notes")


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _coerce_lead_data(value: Any) -> dict[str, str] | None:
    if not isinstance(value, dict):
        return None
    fields = {key: _as_text(value.get(key)) for key in LEAD_DATA_FIELDS}
    cleaned = {key: text for key, text in fields.items() if text is not None}
    return cleaned or None


def validate_assignments(entries: Sequence[Any]) -> tuple[list[PipelineAssignment], list[AnalysisValidationWarning]]:
    """Keep every entry with a known action and a non-empty stage.

    Other fields are coerced to text or dropped individually; whether a create
    carries enough lead data is left to the applier.
    """
    kept: list[PipelineAssignment] = []
    warnings: list[AnalysisValidationWarning] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            warnings.append(AnalysisValidationWarning(index, entry, "entry is not an object"))
            continue
        action = entry.get("action")
        if action not in VALID_ACTIONS:
            warnings.append(AnalysisValidationWarning(index, entry, f"invalid action: {action!r}"))
            continue
        stage = entry.get("pipelineStage", entry.get("pipeline_stage"))
        if not isinstance(stage, str) or not stage.strip():
            warnings.append(AnalysisValidationWarning(index, entry, "missing pipelineStage"))
            continue
        lead_data = _coerce_lead_data(entry.get("leadData", entry.get("lead_data")))
        kept.append(
            PipelineAssignment(
                action=action,
                leadId=_as_text(entry.get("leadId", entry.get("lead_id"))),
                pipelineStage=stage.strip(),
                reason=_as_text(entry.get("reason")) or "",
                leadData=LeadData(**lead_data) if lead_data is not None else None,
            )
        )
    return kept, warnings


class TranscriptAnalyzer:
    def __init__(self, client: LLMClient | None = None) -> None:
        self.client: LLMClient = client or OpenAIChatClient()

    async def analyze(
        self,
        transcript: str,
        stage_names: Sequence[str] | None = None,
        api_key: str | None = None,
    ) -> list[PipelineAssignment]:
        if not transcript or not transcript.strip():
            raise AnalysisError("transcript is empty")

        started = time.perf_counter()
        with tracer.start_as_current_span("transcript.analyze") as span:
            annotate_current_span(**{"transcript.length": len(transcript)})
            try:
                raw = await self.client.complete(
                    system_prompt=build_system_prompt(stage_names),
                    user_prompt=build_user_prompt(transcript),
                    api_key=api_key,
                )
                try:
                    response = json.loads(raw)
                except (TypeError, ValueError) as exc:
                    raise AnalysisParseError(transcript, raw) from exc
            except AnalysisError as exc:
                outcome = _outcome_for(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                span.set_attribute("analysis.outcome", outcome)
                observe_transcript_analysis(outcome, time.perf_counter() - started)
                logger.warning("transcript.analysis_failed", extra={"reason": str(exc)})
                raise

            kept, warnings = validate_assignments(normalize_response(response))
            for warning in warnings:
                logger.warning(
                    "transcript.assignment_dropped",
                    extra={"assignment_index": warning.index, "reason": warning.reason},
                )
            span.set_attribute("analysis.outcome", "success")
            span.set_attribute("assignments.kept", len(kept))
            span.set_attribute("assignments.dropped", len(warnings))

        observe_transcript_analysis("success", time.perf_counter() - started, dropped=len(warnings))
        logger.info("transcript.analyzed", extra={"kept": len(kept), "dropped": len(warnings)})
        return kept


def _outcome_for(exc: AnalysisError) -> str:
    if isinstance(exc, AnalysisParseError):
        return "parse_error"
    if isinstance(exc, AnalysisNotConfiguredError):
        return "not_configured"
    if isinstance(exc, AnalysisProviderError):
        return "provider_error"
    return "error"
