"""Current-period usage for the signed-in user."""

from fastapi import APIRouter, Depends

from backend.core.auth import get_current_user
from backend.core.guards import user_rate_limit
from backend.core.services import AppServices, get_services
from backend.models.user import AuthenticatedUser

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("", dependencies=[Depends(user_rate_limit("general"))])
async def my_usage(
    user: AuthenticatedUser = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    summary = await services.enforcer.usage_summary(user.id, user.plan, services.now())
    return {"success": True, "data": summary.model_dump(mode="json")}
