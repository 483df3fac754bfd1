from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from typing import Any

from fastapi import APIRouter, WebSocket, status
from starlette.websockets import WebSocketDisconnect

from app.context import reset_organization_id, set_organization_id
from app.core.auth import AuthUser, InvalidTokenError, decode_access_token
from app.core.config import get_settings
from app.metrics import observe_room_join, observe_session_closed, observe_session_opened
from app.realtime.errors import MessageFormatError
from app.realtime.events import (
    JOIN_ORGANIZATION,
    LEAVE_ORGANIZATION,
    ORGANIZATION_JOINED,
    EventMessage,
)
from app.realtime.rooms import RealtimeSession, RoomRegistry
from app.realtime.router import EventRouter, event_router


logger = logging.getLogger("app.realtime.gateway")

router = APIRouter(tags=["realtime"])


def _extract_token(websocket: WebSocket) -> str:
    token = websocket.query_params.get("token")
    if token:
        return token
    auth_header = websocket.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


def _requested_organization(data: Any) -> str | None:
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        value = data.get("organizationId") or data.get("organization_id")
        return str(value) if value else None
    return None


def handle_client_message(registry: RoomRegistry, session: RealtimeSession, message: EventMessage) -> None:
    if message.event == JOIN_ORGANIZATION:
        requested = _requested_organization(message.data)
        if requested != session.organization_id:
            observe_room_join("blocked")
            logger.warning(
                "realtime.room.join_blocked",
                extra={
                    "connection_id": session.connection_id,
                    "user_id": session.user_id,
                    "requested_organization_id": requested,
                },
            )
            return
        joined = registry.join(session.connection_id, requested)
        observe_room_join("joined" if joined else "already_joined")
        logger.info(
            "realtime.room.joined",
            extra={"connection_id": session.connection_id, "status": "joined" if joined else "already_joined"},
        )
        session.enqueue(EventMessage(event=ORGANIZATION_JOINED, data={"organizationId": requested}))
        return

    if message.event == LEAVE_ORGANIZATION:
        requested = _requested_organization(message.data)
        if requested is not None and registry.leave(session.connection_id, requested):
            logger.info("realtime.room.left", extra={"connection_id": session.connection_id})
        return

    logger.debug(
        "realtime.message.ignored",
        extra={"connection_id": session.connection_id, "event_name": message.event},
    )


async def _pump_outbox(websocket: WebSocket, session: RealtimeSession) -> None:
    while True:
        message = await session.outbox.get()
        try:
            await websocket.send_text(message.encode())
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug(
                "realtime.session.send_failed",
                extra={"connection_id": session.connection_id, "error": str(exc)},
            )
            return


async def serve_session(websocket: WebSocket, user: AuthUser, router: EventRouter) -> None:
    settings = get_settings()
    registry = router.registry
    router.bind_loop(asyncio.get_running_loop())

    session = RealtimeSession(
        connection_id=str(uuid.uuid4()),
        user_id=user.sub,
        organization_id=str(user.organization_id),
        outbox_size=settings.realtime_outbox_size,
    )
    registry.register(session)
    observe_session_opened()
    token = set_organization_id(session.organization_id)
    logger.info("realtime.session.connected", extra={"connection_id": session.connection_id, "user_id": user.sub})

    writer = asyncio.create_task(_pump_outbox(websocket, session))
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            raw = frame.get("text") if frame.get("text") is not None else frame.get("bytes")
            try:
                message = EventMessage.decode(raw)
            except MessageFormatError as exc:
                logger.warning(
                    "realtime.message.malformed",
                    extra={"connection_id": session.connection_id, "error": str(exc)},
                )
                continue
            handle_client_message(registry, session, message)
    except WebSocketDisconnect:
        pass
    finally:
        writer.cancel()
        with suppress(asyncio.CancelledError):
            await writer
        registry.unregister(session.connection_id)
        observe_session_closed()
        logger.info("realtime.session.disconnected", extra={"connection_id": session.connection_id})
        reset_organization_id(token)


@router.websocket(get_settings().realtime_path)
async def realtime_socket(websocket: WebSocket) -> None:
    try:
        user = decode_access_token(_extract_token(websocket))
    except InvalidTokenError as exc:
        logger.warning("realtime.session.rejected", extra={"reason": str(exc)})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if not user.organization_id:
        logger.warning("realtime.session.rejected", extra={"reason": "token has no organization"})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    await serve_session(websocket, user, event_router)
