from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from fastapi import HTTPException
from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.assignments.errors import ApplierError
from app.assignments.schemas import AppliedAssignment, AssignmentFailure, PipelineAssignment
from app.core.auth import ActorUser
from app.crm.schemas import LeadCreate, LeadRead, LeadUpdate
from app.crm.service import LeadService, lead_service
from app.metrics import observe_assignment_applied
from app.notifications.service import create_lead_assigned_notification
from app.otel import annotate_current_span

logger = logging.getLogger("app.assignments.applier")
tracer = trace.get_tracer("app.assignments")

AI_LEAD_SOURCE = "ai_assignment"


@dataclass
class ApplyReport:
    applied: list[AppliedAssignment] = field(default_factory=list)
    failed: list[ApplierError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def failures(self) -> list[AssignmentFailure]:
        return [
            AssignmentFailure(index=error.index, action=error.action, lead_id=error.lead_id, reason=error.reason)  # type: ignore[arg-type]
            for error in self.failed
        ]


class AssignmentApplier:
    """Applies validated assignments in order; one failure never stops the rest."""

    def __init__(self, leads: LeadService | None = None, *, notify: bool = True) -> None:
        self.leads = leads or lead_service
        self.notify = notify

    def apply(self, session: Session, actor_user: ActorUser, assignments: Sequence[PipelineAssignment]) -> ApplyReport:
        report = ApplyReport()
        with tracer.start_as_current_span("assignments.apply") as span:
            annotate_current_span(**{"assignments.count": len(assignments)})
            for index, assignment in enumerate(assignments):
                try:
                    applied = self._apply_one(session, actor_user, index, assignment)
                except ApplierError as exc:
                    report.failed.append(exc)
                    observe_assignment_applied(assignment.action, "failed")
                    logger.warning(
                        "assignment.failed",
                        extra={
                            "assignment_index": index,
                            "action": assignment.action,
                            "lead_id": exc.lead_id,
                            "reason": exc.reason,
                        },
                    )
                    continue

                report.applied.append(applied)
                observe_assignment_applied(assignment.action, "applied")
                logger.info(
                    "assignment.applied",
                    extra={"assignment_index": index, "action": assignment.action, "lead_id": str(applied.lead_id)},
                )
                if self.notify and applied.lead is not None:
                    self._notify(session, actor_user, applied.lead)

            span.set_attribute("assignments.applied", len(report.applied))
            span.set_attribute("assignments.failed", len(report.failed))
        return report

    def _apply_one(
        self,
        session: Session,
        actor_user: ActorUser,
        index: int,
        assignment: PipelineAssignment,
    ) -> AppliedAssignment:
        action = assignment.action
        try:
            if action == "create":
                lead = self._create(session, actor_user, index, assignment)
                return AppliedAssignment(
                    index=index, action=action, lead_id=lead.id, pipeline_stage=lead.pipeline_stage, lead=lead
                )

            lead_id = self._require_lead_id(index, assignment)
            if action == "update":
                lead = self.leads.update_lead(session, actor_user, lead_id, self._update_payload(assignment))
                return AppliedAssignment(
                    index=index, action=action, lead_id=lead.id, pipeline_stage=lead.pipeline_stage, lead=lead
                )

            self.leads.delete_lead(session, actor_user, lead_id)
            return AppliedAssignment(
                index=index, action=action, lead_id=lead_id, pipeline_stage=assignment.pipeline_stage
            )
        except HTTPException as exc:
            raise ApplierError(index, action, str(exc.detail), assignment.lead_id) from exc
        except ValidationError as exc:
            raise ApplierError(index, action, f"invalid lead data: {exc.error_count()} error(s)", assignment.lead_id) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise ApplierError(index, action, f"storage error: {exc.__class__.__name__}", assignment.lead_id) from exc

    def _create(self, session: Session, actor_user: ActorUser, index: int, assignment: PipelineAssignment) -> LeadRead:
        if assignment.lead_data is None:
            raise ApplierError(index, assignment.action, "leadData is required for create")
        data = assignment.lead_data
        if not data.name:
            raise ApplierError(index, assignment.action, "leadData.name is required for create")
        dto = LeadCreate(
            name=data.name,
            email=data.email,
            phone=data.phone,
            company=data.company,
            notes=_merge_notes(data.notes, assignment.reason),
            pipeline_stage=assignment.pipeline_stage,
            source=AI_LEAD_SOURCE,
        )
        return self.leads.create_lead(session, actor_user, dto)

    @staticmethod
    def _require_lead_id(index: int, assignment: PipelineAssignment) -> uuid.UUID:
        if not assignment.lead_id:
            raise ApplierError(index, assignment.action, f"leadId is required for {assignment.action}")
        try:
            return uuid.UUID(assignment.lead_id)
        except ValueError as exc:
            raise ApplierError(index, assignment.action, "lead not found", assignment.lead_id) from exc

    @staticmethod
    def _update_payload(assignment: PipelineAssignment) -> LeadUpdate:
        values: dict[str, object] = {"pipeline_stage": assignment.pipeline_stage}
        if assignment.lead_data is not None:
            values.update(assignment.lead_data.model_dump(exclude_none=True))
        return LeadUpdate(**values)

    def _notify(self, session: Session, actor_user: ActorUser, lead: LeadRead) -> None:
        try:
            create_lead_assigned_notification(
                session,
                user_id=actor_user.user_id,
                organization_id=actor_user.organization_id,
                lead_id=str(lead.id),
                lead_name=lead.name,
                pipeline_stage=lead.pipeline_stage,
            )
        except SQLAlchemyError:
            session.rollback()
            logger.exception("assignment.notification_failed", extra={"lead_id": str(lead.id)})


def _merge_notes(notes: str | None, reason: str) -> str | None:
    if notes and reason:
        return f"{notes}\n\nAI: {reason}"
    return notes or (f"AI: {reason}" if reason else None)
