from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import InvalidHandshake, InvalidURI, WebSocketException

from app.realtime.errors import MessageFormatError, TransportError
from app.realtime.events import EventMessage


logger = logging.getLogger("app.realtime.transport")


class Transport(Protocol):
    """A single-use client connection to the realtime gateway."""

    async def connect(self) -> None: ...

    async def emit(self, event: str, data: Any = None) -> None: ...

    async def receive(self) -> EventMessage: ...

    async def close(self) -> None: ...


def _with_token(url: str, token: str) -> str:
    parts = urlsplit(url)
    query = f"{parts.query}&{urlencode({'token': token})}" if parts.query else urlencode({"token": token})
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class WebSocketTransport:
    def __init__(self, url: str, token: str, *, open_timeout: float = 10.0) -> None:
        self.url = url
        self.token = token
        self.open_timeout = open_timeout
        self._connection: ClientConnection | None = None

    async def connect(self) -> None:
        if self._connection is not None:
            raise TransportError("transport instances are single-use")
        try:
            self._connection = await connect(_with_token(self.url, self.token), open_timeout=self.open_timeout)
        except (OSError, TimeoutError, InvalidURI, InvalidHandshake) as exc:
            raise TransportError(f"connect to {self.url} failed: {exc}") from exc

    async def emit(self, event: str, data: Any = None) -> None:
        connection = self._require_connection()
        try:
            await connection.send(EventMessage(event=event, data=data).encode())
        except WebSocketException as exc:
            raise TransportError(f"send failed: {exc}") from exc

    async def receive(self) -> EventMessage:
        connection = self._require_connection()
        while True:
            try:
                raw = await connection.recv()
            except WebSocketException as exc:
                raise TransportError(f"connection lost: {exc}") from exc
            try:
                return EventMessage.decode(raw)
            except MessageFormatError as exc:
                logger.warning("realtime.transport.malformed_frame", extra={"error": str(exc)})
                continue

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()

    def _require_connection(self) -> ClientConnection:
        if self._connection is None:
            raise TransportError("transport is not connected")
        return self._connection
