from fastapi import APIRouter, Depends
from fastapi.responses import Response

from autoflow.automation.api import cron_router, router as automations_router
from autoflow.core.auth import AuthUser, get_current_user
from autoflow.core.config import get_settings
from autoflow.core.errors import ForbiddenError, NotFoundError
from autoflow.metrics import generate_metrics_payload, metrics_content_type
from autoflow.service_accounts.api import auth_router, router as service_accounts_router
from autoflow.workflow.api import router as workflows_router

router = APIRouter()
router.include_router(automations_router)
router.include_router(cron_router)
router.include_router(service_accounts_router)
router.include_router(auth_router)
router.include_router(workflows_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "email": user.email,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("not found")
    if "system.metrics.read" not in user.roles:
        raise ForbiddenError("Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
