from __future__ import annotations

import logging

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.assignments.analyzer import TranscriptAnalyzer
from app.assignments.applier import AssignmentApplier
from app.assignments.schemas import TranscriptAnalyzeResponse
from app.core.auth import ActorUser
from app.crm.service import PipelineService, pipeline_service

logger = logging.getLogger("app.assignments")


class TranscriptAssignmentPipeline:
    """Out-of-band flow: stage vocabulary, analysis, then application in a worker thread."""

    def __init__(
        self,
        analyzer: TranscriptAnalyzer | None = None,
        applier: AssignmentApplier | None = None,
        stages: PipelineService | None = None,
    ) -> None:
        self.analyzer = analyzer or TranscriptAnalyzer()
        self.applier = applier or AssignmentApplier()
        self.stages = stages or pipeline_service

    async def run(
        self,
        session: Session,
        actor_user: ActorUser,
        transcript: str,
        *,
        apply: bool = True,
        api_key: str | None = None,
    ) -> TranscriptAnalyzeResponse:
        stage_names = await run_in_threadpool(self.stages.list_stage_names, session, actor_user.organization_id)
        assignments = await self.analyzer.analyze(transcript, stage_names, api_key=api_key)
        if not apply or not assignments:
            return TranscriptAnalyzeResponse(assignments=assignments)

        report = await run_in_threadpool(self.applier.apply, session, actor_user, assignments)
        logger.info(
            "transcript.assignments_applied",
            extra={"organization_id": actor_user.organization_id, "count": len(report.applied)},
        )
        return TranscriptAnalyzeResponse(
            assignments=assignments,
            applied=report.applied,
            failed=report.failures(),
        )
