"""
Admin API routes.

Every route: admin rate limit (IP), authentication, then the is_admin check.
"""
import asyncio
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.core.errors import UpstreamServiceError
from backend.core.guards import rate_limit, require_admin
from backend.core.logging import log_event
from backend.core.services import AppServices, get_services
from backend.models.user import DEFAULT_PLAN, AuthenticatedUser

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(rate_limit("admin"))],
)

MAX_PAGE_LIMIT = 100
APPROVAL_STATUSES = ("pending", "approved", "rejected")


class ApprovalIn(BaseModel):
    notes: Optional[str] = None


def _auth_client(services: AppServices):
    if services.auth_client is None:
        raise UpstreamServiceError("Authentication is not configured")
    return services.auth_client


async def _with_email(client, profile: dict) -> dict:
    auth_user = await client.get_auth_user(profile["id"])
    return {**profile, "email": (auth_user or {}).get("email")}


@router.get("/users")
async def list_users(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    admin: AuthenticatedUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
):
    """Profiles newest first; an unknown status filter is ignored."""
    client = _auth_client(services)
    limit = max(1, min(limit, MAX_PAGE_LIMIT))
    offset = max(offset, 0)
    profiles, total = await client.list_profiles(
        status=status if status in APPROVAL_STATUSES else None,
        limit=limit,
        offset=offset,
    )
    users = await asyncio.gather(*(_with_email(client, profile) for profile in profiles))

    log_event("info", "admin.users_listed", user_id=admin.id, extra={"count": len(users)})
    return {
        "success": True,
        "data": {"users": list(users), "total": total, "limit": limit, "offset": offset},
    }


@router.get("/stats")
async def user_stats(
    admin: AuthenticatedUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
):
    client = _auth_client(services)
    today = services.now().date().isoformat()
    pending, approved, rejected, today_signups = await asyncio.gather(
        *(client.count_profiles(approval_status=f"eq.{status}") for status in APPROVAL_STATUSES),
        client.count_profiles(created_at=f"gte.{today}T00:00:00"),
    )
    return {
        "success": True,
        "data": {
            "stats": {
                "pending": pending,
                "approved": approved,
                "rejected": rejected,
                "todaySignups": today_signups,
            }
        },
    }


async def _set_approval(
    services: AppServices,
    admin: AuthenticatedUser,
    user_id: str,
    status: str,
    notes: Optional[str],
) -> dict:
    client = _auth_client(services)
    profile = await client.update_profile(
        user_id,
        {
            "approval_status": status,
            "approval_notes": notes or None,
            "approved_at": services.now().isoformat(),
            "approved_by": admin.id,
        },
    )
    user = await _with_email(client, {**profile, "id": profile.get("id", user_id)})
    log_event(
        "info",
        f"admin.user_{status}",
        user_id=admin.id,
        extra={"target_user_id": user_id},
    )
    return user


@router.post("/users/{user_id}/approve")
async def approve_user(
    user_id: str,
    data: Optional[ApprovalIn] = None,
    admin: AuthenticatedUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
):
    user = await _set_approval(services, admin, user_id, "approved", data.notes if data else None)
    return {"success": True, "data": {"user": user}, "message": "User approved successfully"}


@router.post("/users/{user_id}/reject")
async def reject_user(
    user_id: str,
    data: Optional[ApprovalIn] = None,
    admin: AuthenticatedUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
):
    user = await _set_approval(services, admin, user_id, "rejected", data.notes if data else None)
    return {"success": True, "data": {"user": user}, "message": "User rejected successfully"}


@router.get("/users/{user_id}/usage")
async def user_usage(
    user_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    services: AppServices = Depends(get_services),
):
    """Usage summary for any user, resolved against their current plan."""
    profile = await _auth_client(services).get_profile(user_id)
    plan = profile.get("plan") or DEFAULT_PLAN

    summary = await services.enforcer.usage_summary(user_id, plan, services.now())
    log_event("info", "admin.usage_viewed", user_id=admin.id, extra={"target_user_id": user_id})
    return {"success": True, "data": summary.model_dump(mode="json")}
