from dataclasses import dataclass, field
from typing import Any

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    organization_id: str | None = None


@dataclass
class ActorUser:
    user_id: str
    organization_id: str
    roles: set[str] = field(default_factory=set)
    correlation_id: str | None = None


class InvalidTokenError(Exception):
    pass


def decode_access_token(token: str) -> AuthUser:
    if not token:
        raise InvalidTokenError("missing token")

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise InvalidTokenError(str(exc)) from exc

    subject = payload.get("sub")
    if subject is None:
        raise InvalidTokenError("token has no subject")
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    organization_id = payload.get("org_id")
    return AuthUser(
        sub=str(subject),
        roles=[str(role) for role in roles],
        organization_id=str(organization_id) if organization_id else None,
    )


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    token = bearer_token(request)
    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    try:
        user = decode_access_token(token)
    except InvalidTokenError:
        return AuthUser(sub="anonymous", roles=["guest"])
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
        context.organization_id = user.organization_id
    return user


def get_current_actor(request: Request, auth_user: AuthUser = Depends(get_current_user)) -> ActorUser:
    if auth_user.sub == "anonymous" or not auth_user.organization_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="organization membership required")
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        organization_id=auth_user.organization_id,
        roles=set(auth_user.roles),
        correlation_id=correlation_id,
    )
