from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.auth import ActorUser
from app.crm.models import CRMLead, CRMPipelineStage, utcnow
from app.crm.schemas import LeadCreate, LeadRead, LeadUpdate, PipelineStageCreate, PipelineStageRead
from app.realtime.events import LEAD_CREATED, LEAD_DELETED, LEAD_UPDATED

logger = logging.getLogger("app.crm")

DEFAULT_PIPELINE_STAGES: tuple[str, ...] = (
    "new",
    "contacted",
    "qualified",
    "proposal",
    "closed-won",
    "closed-lost",
)


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        stage = self._require_stage(session, actor_user.organization_id, dto.pipeline_stage)
        lead = CRMLead(
            organization_id=actor_user.organization_id,
            name=dto.name.strip(),
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            company=dto.company,
            notes=dto.notes,
            pipeline_stage=stage,
            source=dto.source,
        )
        session.add(lead)
        session.flush()
        lead_read = self._to_read(lead)

        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="create",
            before=None,
            after=lead_read.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

        created = self._to_read_model(session, actor_user.organization_id, lead.id)
        events.publish(actor_user.organization_id, LEAD_CREATED, created.model_dump(mode="json"))
        logger.info("crm.lead.created", extra={"lead_id": str(created.id), "organization_id": created.organization_id})
        return created

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead).where(
            and_(CRMLead.organization_id == actor_user.organization_id, CRMLead.deleted_at.is_(None))
        )
        if filters.get("pipeline_stage"):
            stmt = stmt.where(CRMLead.pipeline_stage == filters["pipeline_stage"])
        if filters.get("source"):
            stmt = stmt.where(CRMLead.source == filters["source"])
        if filters.get("q"):
            q = str(filters["q"])
            stmt = stmt.where(
                (CRMLead.name.ilike(f"%{q}%")) | (CRMLead.company.ilike(f"%{q}%")) | (CRMLead.email.ilike(f"%{q}%"))
            )

        offset = int(cursor) if cursor and cursor.isdigit() else 0
        leads = session.scalars(stmt.order_by(CRMLead.created_at.desc()).offset(offset).limit(limit)).all()
        return [self._to_read(item) for item in leads]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return self._to_read(self._get_active(session, actor_user.organization_id, lead_id))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._get_active(session, actor_user.organization_id, lead_id)

        payload = dto.model_dump(exclude_unset=True)
        expected_version = payload.pop("row_version", None)
        if expected_version is None:
            expected_version = lead.row_version
        if "email" in payload:
            payload["email"] = str(payload["email"]) if payload["email"] is not None else None
        if "name" in payload:
            if payload["name"] is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="lead name is required")
            payload["name"] = payload["name"].strip()
        if "pipeline_stage" in payload:
            if payload["pipeline_stage"] is None:
                payload.pop("pipeline_stage")
            else:
                payload["pipeline_stage"] = self._require_stage(
                    session, actor_user.organization_id, payload["pipeline_stage"]
                )
        if not payload:
            return self._to_read(lead)

        payload["updated_at"] = utcnow()
        payload["row_version"] = CRMLead.row_version + 1

        before = self._to_read(lead).model_dump(mode="json")
        result = session.execute(
            update(CRMLead)
            .where(
                and_(
                    CRMLead.id == lead.id,
                    CRMLead.row_version == expected_version,
                    CRMLead.deleted_at.is_(None),
                )
            )
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")

        session.expire(lead)
        updated = self._to_read(lead)
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type=self.entity_type,
            entity_id=str(lead.id),
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

        updated = self._to_read_model(session, actor_user.organization_id, lead_id)
        events.publish(actor_user.organization_id, LEAD_UPDATED, updated.model_dump(mode="json"))
        logger.info("crm.lead.updated", extra={"lead_id": str(updated.id), "organization_id": updated.organization_id})
        return updated

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._get_active(session, actor_user.organization_id, lead_id)
        before = self._to_read(lead).model_dump(mode="json")

        lead.deleted_at = utcnow()
        lead.row_version = lead.row_version + 1
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

        events.publish(actor_user.organization_id, LEAD_DELETED, {"id": str(lead_id)})
        logger.info("crm.lead.deleted", extra={"lead_id": str(lead_id), "organization_id": actor_user.organization_id})

    def _require_stage(self, session: Session, organization_id: str, stage: str) -> str:
        normalized = stage.strip()
        if normalized not in pipeline_service.list_stage_names(session, organization_id):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unknown pipeline stage: {normalized}",
            )
        return normalized

    def _get_active(self, session: Session, organization_id: str, lead_id: uuid.UUID) -> CRMLead:
        lead = session.scalar(
            select(CRMLead).where(
                and_(
                    CRMLead.id == lead_id,
                    CRMLead.organization_id == organization_id,
                    CRMLead.deleted_at.is_(None),
                )
            )
        )
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def _to_read_model(self, session: Session, organization_id: str, lead_id: uuid.UUID) -> LeadRead:
        lead = session.scalar(
            select(CRMLead).where(and_(CRMLead.id == lead_id, CRMLead.organization_id == organization_id))
        )
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return self._to_read(lead)

    def _to_read(self, lead: CRMLead) -> LeadRead:
        return LeadRead.model_validate(lead)


class PipelineService:
    entity_type = "crm.pipeline_stage"

    def list_stage_names(self, session: Session, organization_id: str) -> list[str]:
        """Return the organization's stage vocabulary, falling back to the default funnel."""
        names = session.scalars(
            select(CRMPipelineStage.name)
            .where(CRMPipelineStage.organization_id == organization_id)
            .order_by(CRMPipelineStage.position.asc(), CRMPipelineStage.name.asc())
        ).all()
        return list(names) if names else list(DEFAULT_PIPELINE_STAGES)

    def list_stages(self, session: Session, organization_id: str) -> list[PipelineStageRead]:
        stages = session.scalars(
            select(CRMPipelineStage)
            .where(CRMPipelineStage.organization_id == organization_id)
            .order_by(CRMPipelineStage.position.asc(), CRMPipelineStage.name.asc())
        ).all()
        return [PipelineStageRead.model_validate(stage) for stage in stages]

    def create_stage(self, session: Session, actor_user: ActorUser, dto: PipelineStageCreate) -> PipelineStageRead:
        stage = CRMPipelineStage(
            organization_id=actor_user.organization_id,
            name=dto.name.strip(),
            position=dto.position,
        )
        session.add(stage)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="pipeline stage already exists") from exc

        created = PipelineStageRead.model_validate(stage)
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        return created


lead_service = LeadService()
pipeline_service = PipelineService()
