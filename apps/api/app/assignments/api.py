from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import error_response
from app.assignments.errors import (
    AnalysisError,
    AnalysisNotConfiguredError,
    AnalysisParseError,
    AnalysisProviderError,
)
from app.assignments.schemas import TranscriptAnalyzeRequest, TranscriptAnalyzeResponse
from app.assignments.service import TranscriptAssignmentPipeline
from app.core.auth import ActorUser, get_current_actor
from app.core.database import get_db

router = APIRouter(prefix="/api/transcripts", tags=["assignments"])

_pipeline: TranscriptAssignmentPipeline | None = None


def get_assignment_pipeline() -> TranscriptAssignmentPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = TranscriptAssignmentPipeline()
    return _pipeline


def _status_for(exc: AnalysisError) -> tuple[int, str]:
    if isinstance(exc, AnalysisParseError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY, "transcript_parse_failed"
    if isinstance(exc, AnalysisNotConfiguredError):
        return status.HTTP_503_SERVICE_UNAVAILABLE, "transcript_analyzer_not_configured"
    if isinstance(exc, AnalysisProviderError):
        return status.HTTP_502_BAD_GATEWAY, "transcript_provider_failed"
    return status.HTTP_422_UNPROCESSABLE_ENTITY, "transcript_analysis_failed"


@router.post("/analyze", response_model=TranscriptAnalyzeResponse)
async def analyze_transcript(
    request: Request,
    dto: TranscriptAnalyzeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
    pipeline: TranscriptAssignmentPipeline = Depends(get_assignment_pipeline),
) -> TranscriptAnalyzeResponse | JSONResponse:
    try:
        return await pipeline.run(db, user, dto.transcript, apply=dto.apply)
    except AnalysisError as exc:
        status_code, code = _status_for(exc)
        return error_response(
            request,
            status_code=status_code,
            code=code,
            message=str(exc),
            details={"reason": str(exc)},
        )
