from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from mobilecrm.core.auth import ActorUser, get_current_user
from mobilecrm.core.config import get_settings
from mobilecrm.core.rbac import ensure_role
from mobilecrm.crm.api import (
    activities_router,
    config_router,
    customers_router,
    leads_router,
    opportunities_router,
    pipeline_router,
)
from mobilecrm.identity.api import auth_router, settings_router, teams_router, users_router
from mobilecrm.metrics import generate_metrics_payload, metrics_content_type
from mobilecrm.reporting.api import dashboard_router, forecast_router

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(teams_router)
router.include_router(settings_router)
router.include_router(customers_router)
router.include_router(leads_router)
router.include_router(activities_router)
router.include_router(pipeline_router)
router.include_router(opportunities_router)
router.include_router(dashboard_router)
router.include_router(forecast_router)
router.include_router(config_router)


@router.get("/api/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "success",
        "message": "CRM API is running",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    ensure_role(user, "admin")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
