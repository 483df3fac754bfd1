from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import error_response
from app.core.auth import ActorUser, get_current_actor
from app.core.database import get_db
from app.notifications.schemas import MarkAllReadResponse, NotificationRead, UnreadCountResponse
from app.notifications.service import notification_service

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> list[NotificationRead]:
    return notification_service.list_for_user(
        db,
        user.organization_id,
        user.user_id,
        unread_only=unread_only,
        limit=limit,
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
def unread_count(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> UnreadCountResponse:
    return UnreadCountResponse(count=notification_service.count_unread(db, user.organization_id, user.user_id))


@router.patch("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> NotificationRead | JSONResponse:
    try:
        return notification_service.mark_read(db, user, notification_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="notification_mark_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/read-all", response_model=MarkAllReadResponse)
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> MarkAllReadResponse:
    return notification_service.mark_all_read(db, user.organization_id, user.user_id)


@router.delete("/{notification_id}", response_model=None)
def delete_notification(
    request: Request,
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> dict[str, str] | JSONResponse:
    try:
        notification_service.delete(db, user, notification_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="notification_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
