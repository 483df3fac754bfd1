from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.assignments.api import router as assignments_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import audit_router, leads_router, pipelines_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.notifications.api import router as notifications_router
from app.realtime.gateway import router as realtime_router
from app.realtime.router import event_router

router = APIRouter()
router.include_router(leads_router)
router.include_router(pipelines_router)
router.include_router(audit_router)
router.include_router(notifications_router)
router.include_router(assignments_router)
router.include_router(realtime_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str | int]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "realtime_sessions": event_router.registry.session_count(),
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "organization_id": user.organization_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
