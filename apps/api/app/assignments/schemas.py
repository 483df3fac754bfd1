from __future__ import annotations

from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.crm.schemas import LeadRead

AssignmentAction = Literal["create", "update", "delete"]


class LeadData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    notes: str | None = None


class PipelineAssignment(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: AssignmentAction
    lead_id: str | None = Field(default=None, alias="leadId")
    pipeline_stage: str = Field(alias="pipelineStage", min_length=1)
    reason: str = ""
    lead_data: LeadData | None = Field(default=None, alias="leadData")


class AssignmentFailure(BaseModel):
    index: int
    action: AssignmentAction
    lead_id: str | None = None
    reason: str


class AppliedAssignment(BaseModel):
    index: int
    action: AssignmentAction
    lead_id: UUID
    pipeline_stage: str
    lead: LeadRead | None = None


class TranscriptAnalyzeRequest(BaseModel):
    transcript: str = Field(min_length=1)
    apply: bool = True


class TranscriptAnalyzeResponse(BaseModel):
    assignments: list[PipelineAssignment]
    applied: list[AppliedAssignment] = Field(default_factory=list)
    failed: list[AssignmentFailure] = Field(default_factory=list)
