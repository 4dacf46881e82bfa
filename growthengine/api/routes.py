from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from growthengine.core.config import get_settings
from growthengine.core.rbac import ADMINS, require_roles
from growthengine.crm.api import (
    ActorUser,
    automation_router,
    companies_router,
    dashboard_router,
    deals_router,
    get_current_user,
    notifications_router,
    tracking_router,
    users_router,
    workflows_router,
)
from growthengine.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(users_router)
router.include_router(companies_router)
router.include_router(deals_router)
router.include_router(dashboard_router)
router.include_router(workflows_router)
router.include_router(notifications_router)
router.include_router(tracking_router)
router.include_router(automation_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(user: ActorUser = Depends(get_current_user)) -> dict[str, str]:
    return {
        "user_id": str(user.user_id),
        "email": user.email,
        "role": user.role,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    require_roles(user, *ADMINS)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
