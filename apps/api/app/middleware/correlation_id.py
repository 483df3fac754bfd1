from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, reset_organization_id, set_correlation_id, set_organization_id
from app.core.auth import InvalidTokenError, bearer_token, decode_access_token


def _token_organization_id(request: Request) -> str | None:
    token = bearer_token(request)
    if not token:
        return None
    try:
        return decode_access_token(token).organization_id
    except InvalidTokenError:
        return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id and the caller's organization to the logging context."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        organization_id = _token_organization_id(request)
        request.state.correlation_id = correlation_id

        correlation_token = set_correlation_id(correlation_id)
        organization_token = set_organization_id(organization_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if organization_id:
                span.set_attribute("organization_id", organization_id)
        try:
            response = await call_next(request)
        finally:
            reset_organization_id(organization_token)
            reset_correlation_id(correlation_token)

        response.headers["x-correlation-id"] = correlation_id
        return response
