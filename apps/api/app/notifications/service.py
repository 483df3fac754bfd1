from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session

from app import audit, events
from app.core.auth import ActorUser
from app.notifications.models import Notification
from app.notifications.schemas import MarkAllReadResponse, NotificationCreate, NotificationRead
from app.realtime.events import NOTIFICATION_CREATED


logger = logging.getLogger("app.notifications")


class NotificationService:
    entity_type = "notification"

    def create(self, session: Session, dto: NotificationCreate) -> NotificationRead:
        notification = Notification(
            organization_id=dto.organization_id,
            user_id=dto.user_id,
            type=dto.type,
            title=dto.title,
            message=dto.message,
            metadata_json=dto.metadata,
            read=False,
        )
        session.add(notification)
        session.commit()
        session.refresh(notification)

        created = self._to_read(notification)
        events.publish(created.organization_id, NOTIFICATION_CREATED, created.model_dump(mode="json"))
        logger.info(
            "notification.created",
            extra={"notification_id": str(created.id), "organization_id": created.organization_id},
        )
        return created

    def list_for_user(
        self,
        session: Session,
        organization_id: str,
        user_id: str,
        *,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[NotificationRead]:
        stmt = select(Notification).where(
            and_(Notification.organization_id == organization_id, Notification.user_id == user_id)
        )
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        rows = session.scalars(stmt.order_by(Notification.created_at.desc()).limit(limit)).all()
        return [self._to_read(item) for item in rows]

    def get(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> NotificationRead:
        return self._to_read(self._get_owned(session, actor_user, notification_id))

    def mark_read(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> NotificationRead:
        notification = self._get_owned(session, actor_user, notification_id)
        if notification.read:
            return self._to_read(notification)

        notification.read = True
        session.commit()
        session.refresh(notification)
        return self._to_read(notification)

    def mark_all_read(self, session: Session, organization_id: str, user_id: str) -> MarkAllReadResponse:
        result = session.execute(
            update(Notification)
            .where(
                and_(
                    Notification.organization_id == organization_id,
                    Notification.user_id == user_id,
                    Notification.read.is_(False),
                )
            )
            .values(read=True)
        )
        session.commit()
        count = int(result.rowcount or 0)
        logger.info("notification.mark_all_read", extra={"user_id": user_id, "count": count})
        noun = "notification" if count == 1 else "notifications"
        return MarkAllReadResponse(count=count, message=f"Marked {count} {noun} as read")

    def delete(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> None:
        notification = self._get_owned(session, actor_user, notification_id)
        before = self._to_read(notification).model_dump(mode="json")
        session.execute(delete(Notification).where(Notification.id == notification.id))
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            organization_id=actor_user.organization_id,
            entity_type=self.entity_type,
            entity_id=str(notification_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def count_unread(self, session: Session, organization_id: str, user_id: str) -> int:
        stmt = select(func.count(Notification.id)).where(
            and_(
                Notification.organization_id == organization_id,
                Notification.user_id == user_id,
                Notification.read.is_(False),
            )
        )
        return int(session.scalar(stmt) or 0)

    @staticmethod
    def unread_count(notifications: list[NotificationRead]) -> int:
        return sum(1 for item in notifications if not item.read)

    def _get_owned(self, session: Session, actor_user: ActorUser, notification_id: uuid.UUID) -> Notification:
        notification = session.scalar(
            select(Notification).where(
                and_(
                    Notification.id == notification_id,
                    Notification.organization_id == actor_user.organization_id,
                    Notification.user_id == actor_user.user_id,
                )
            )
        )
        if notification is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="notification not found")
        return notification

    def _to_read(self, notification: Notification) -> NotificationRead:
        return NotificationRead(
            id=notification.id,
            organization_id=notification.organization_id,
            user_id=notification.user_id,
            type=notification.type,  # type: ignore[arg-type]
            title=notification.title,
            message=notification.message,
            metadata=notification.metadata_json,
            read=notification.read,
            created_at=notification.created_at,
        )


notification_service = NotificationService()


def create_welcome_notification(session: Session, user_id: str, organization_id: str) -> NotificationRead:
    return notification_service.create(
        session,
        NotificationCreate(
            organization_id=organization_id,
            user_id=user_id,
            type="welcome",
            title="Welcome to the Platform!",
            message="Thank you for joining! Get started by creating your first AI agent or making a call.",
        ),
    )


def create_call_notification(
    session: Session,
    user_id: str,
    organization_id: str,
    call_id: str,
    direction: str,
    contact_name: str | None = None,
) -> NotificationRead:
    if direction not in {"inbound", "outbound"}:
        raise ValueError("direction must be 'inbound' or 'outbound'")
    inbound = direction == "inbound"
    return notification_service.create(
        session,
        NotificationCreate(
            organization_id=organization_id,
            user_id=user_id,
            type="call",
            title="Incoming Call" if inbound else "Outbound Call Completed",
            message=(
                f"New incoming call from {contact_name or 'Unknown'}"
                if inbound
                else f"Call completed with {contact_name or 'contact'}"
            ),
            metadata={"callId": call_id, "direction": direction},
        ),
    )


def create_billing_notification(
    session: Session,
    user_id: str,
    organization_id: str,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> NotificationRead:
    return notification_service.create(
        session,
        NotificationCreate(
            organization_id=organization_id,
            user_id=user_id,
            type="billing",
            title="Billing Update",
            message=message,
            metadata=metadata,
        ),
    )


def create_update_notification(
    session: Session,
    user_id: str,
    organization_id: str,
    title: str,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> NotificationRead:
    return notification_service.create(
        session,
        NotificationCreate(
            organization_id=organization_id,
            user_id=user_id,
            type="update",
            title=title,
            message=message,
            metadata=metadata,
        ),
    )


def create_lead_assigned_notification(
    session: Session,
    user_id: str,
    organization_id: str,
    lead_id: str,
    lead_name: str,
    pipeline_stage: str | None = None,
) -> NotificationRead:
    return notification_service.create(
        session,
        NotificationCreate(
            organization_id=organization_id,
            user_id=user_id,
            type="lead_assigned",
            title="Lead Assigned",
            message=(
                f'Lead "{lead_name}" assigned to {pipeline_stage} pipeline'
                if pipeline_stage
                else f'Lead "{lead_name}" has been assigned'
            ),
            metadata={"leadId": lead_id, "pipelineStage": pipeline_stage},
        ),
    )
