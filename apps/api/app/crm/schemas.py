from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    notes: str | None = None
    pipeline_stage: str = "new"
    source: str = "manual"


class LeadUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    notes: str | None = None
    pipeline_stage: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    name: str
    email: str | None
    phone: str | None
    company: str | None
    notes: str | None
    pipeline_stage: str
    source: str
    created_at: datetime
    updated_at: datetime
    row_version: int


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    position: int = Field(ge=1)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    name: str
    position: int
    created_at: datetime


class AuditRead(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    action: str
    actor_user_id: str
    occurred_at: datetime
    correlation_id: str | None
    before: dict | None
    after: dict | None
