from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from clubcrm.core.config import get_settings
from clubcrm.crm.api import (
    actors_router,
    audit_router,
    get_current_user,
    goals_router,
    import_router,
    interactions_router,
    members_router,
    prospects_router,
    tasks_router,
)
from clubcrm.crm.schemas import ActorRead
from clubcrm.metrics import generate_metrics_payload, metrics_content_type
from clubcrm.platform.security.context import Actor

router = APIRouter()
router.include_router(actors_router)
router.include_router(prospects_router)
router.include_router(members_router)
router.include_router(tasks_router)
router.include_router(interactions_router)
router.include_router(import_router)
router.include_router(goals_router)
router.include_router(audit_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"], response_model=ActorRead)
def me(user: Actor = Depends(get_current_user)) -> ActorRead:
    return ActorRead.model_validate(user)


@router.get("/metrics", tags=["system"])
def metrics(user: Actor = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
