"""
Route guards (FastAPI dependencies).

- rate_limit(name): limiter keyed by client IP, runs before authentication
- user_rate_limit(name): limiter keyed by the authenticated user id
- require_admin: authenticated caller with profiles.is_admin = true
- enforce_quota: plan quota pre-check, raised as 403/429

Guards run in the order they are declared on the route.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request

from backend.core.auth import ensure_admin, get_current_user
from backend.core.config import settings as default_settings
from backend.core.errors import FeatureNotEnabledError, LimitExceededError, RateLimitError
from backend.core.logging import log_event
from backend.features.entitlements.service import QuotaEnforcer
from backend.models.decision import Deny, DenyKind, RateLimitDecision
from backend.models.plan import Feature
from backend.models.user import AuthenticatedUser


def client_ip(request: Request) -> str:
    """
    Caller IP used as the limiter key.

    Without TRUST_PROXY the socket peer is used and X-Forwarded-For is
    ignored. Behind TRUSTED_PROXY_HOPS proxies, the entry the outermost
    trusted proxy appended is used; entries to its left are client-supplied.
    """
    services = getattr(request.app.state, "services", None)
    app_settings = getattr(services, "settings", default_settings)
    if app_settings.TRUST_PROXY:
        forwarded = request.headers.get("x-forwarded-for", "")
        hops = [part.strip() for part in forwarded.split(",") if part.strip()]
        trusted = max(1, app_settings.TRUSTED_PROXY_HOPS)
        if len(hops) >= trusted:
            return hops[-trusted]
    return request.client.host if request.client else "unknown"


def rate_limit_headers(decision: RateLimitDecision, now: datetime) -> dict:
    reset_at = now + timedelta(milliseconds=decision.reset_after_ms)
    return {
        "Retry-After": str(decision.retry_after),
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": reset_at.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    }


async def _consume(request: Request, name: str, client_key: str) -> RateLimitDecision:
    limiter = request.app.state.services.rate_limiters.get(name)
    decision = await limiter.consume(client_key)
    if decision.allowed:
        return decision

    log_event(
        "warning",
        "ratelimit.exceeded",
        limiter=name,
        error_code="rate_limited",
        extra={
            "client_key": client_key,
            "retry_after": decision.retry_after,
            "path": request.url.path,
        },
    )
    now = datetime.fromtimestamp(limiter.clock(), tz=timezone.utc)
    raise RateLimitError(
        f"Too many requests. Please try again in {decision.retry_after} seconds.",
        headers=rate_limit_headers(decision, now),
    )


def rate_limit(name: str):
    """Limiter dependency keyed by client IP."""

    async def guard(request: Request) -> RateLimitDecision:
        return await _consume(request, name, f"ip:{client_ip(request)}")

    guard.__name__ = f"rate_limit_{name}"
    return guard


def user_rate_limit(name: str):
    """Limiter dependency keyed by user id; authenticates first."""

    async def guard(
        request: Request,
        user: AuthenticatedUser = Depends(get_current_user),
    ) -> RateLimitDecision:
        return await _consume(request, name, f"user:{user.id}")

    guard.__name__ = f"user_rate_limit_{name}"
    return guard


async def require_admin(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
) -> AuthenticatedUser:
    return ensure_admin(user, request)


async def enforce_quota(
    enforcer: QuotaEnforcer,
    user: AuthenticatedUser,
    feature: Feature,
    now: Optional[datetime] = None,
) -> None:
    """
    Run the quota pre-check and turn a Deny into the HTTP error.

    Raises:
        FeatureNotEnabledError 403: plan lacks the feature
        LimitExceededError 429: period limit reached (Retry-After set)
    """
    decision = await enforcer.precheck(user.id, user.plan, feature, now)
    if not isinstance(decision, Deny):
        return
    if decision.kind is DenyKind.FEATURE_DISABLED:
        raise FeatureNotEnabledError(decision.reason)
    headers = {"Retry-After": str(decision.retry_after)} if decision.retry_after else None
    raise LimitExceededError(decision.reason, headers=headers)
