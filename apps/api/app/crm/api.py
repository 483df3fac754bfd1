from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app import audit
from app.api.errors import error_response
from app.core.auth import ActorUser, get_current_actor
from app.core.database import get_db
from app.crm.schemas import AuditRead, LeadCreate, LeadRead, LeadUpdate, PipelineStageCreate, PipelineStageRead
from app.crm.service import lead_service, pipeline_service

leads_router = APIRouter(prefix="/api", tags=["crm.leads"])
pipelines_router = APIRouter(prefix="/api", tags=["crm.pipelines"])
audit_router = APIRouter(prefix="/api", tags=["crm.audit"])


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    pipeline_stage: str | None = Query(default=None),
    source: str | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(
            db,
            user,
            filters={"pipeline_stage": pipeline_stage, "source": source, "q": q},
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.delete("/leads/{lead_id}", response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> dict[str, str] | JSONResponse:
    try:
        lead_service.delete_lead(db, user, lead_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@pipelines_router.get("/pipeline-stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[PipelineStageRead]:
    return pipeline_service.list_stages(db, user.organization_id)


@pipelines_router.post("/pipeline-stages", response_model=PipelineStageRead, status_code=status.HTTP_201_CREATED)
def create_pipeline_stage(
    request: Request,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> PipelineStageRead | JSONResponse:
    try:
        return pipeline_service.create_stage(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_pipeline_stage_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@audit_router.get("/audit", response_model=list[AuditRead])
def list_audit_entries(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    user: ActorUser = Depends(get_current_actor),
) -> list[AuditRead] | JSONResponse:
    try:
        require_permission(user, "crm.audit.read")
        entries = audit.entries_for(
            user.organization_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            limit=limit,
        )
        return [AuditRead.model_validate(entry) for entry in entries]
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_audit_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
