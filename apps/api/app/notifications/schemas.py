from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


NotificationType = Literal["welcome", "call", "billing", "update", "lead_assigned"]


class NotificationCreate(BaseModel):
    organization_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    type: NotificationType
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    metadata: dict[str, Any] | None = None


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    metadata: dict[str, Any] | None = None
    read: bool
    created_at: datetime


class MarkAllReadResponse(BaseModel):
    success: bool = True
    count: int
    message: str


class UnreadCountResponse(BaseModel):
    count: int
