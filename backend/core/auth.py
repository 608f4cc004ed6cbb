"""
Auth utilities for the VibeCoding API.

Validates Supabase access tokens and resolves the caller's plan.

Flow:
1. Authorization: Bearer <access token>
2. GET {SUPABASE_URL}/auth/v1/user verifies the token
3. PostgREST profiles row supplies plan and is_admin
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import Request

from backend.core.errors import (
    AuthenticationError,
    NotFoundError,
    PermissionError,
    UpstreamServiceError,
    ValidationError,
)
from backend.core.logging import LOGGER_NAME, log_event
from backend.models.user import DEFAULT_PLAN, AuthenticatedUser

logger = logging.getLogger(LOGGER_NAME)

DEFAULT_HTTP_TIMEOUT = 10.0

PROFILE_ADMIN_COLUMNS = (
    "id,name,plan,approval_status,approval_notes,approved_at,approved_by,created_at,last_login_at"
)


def _content_range_total(resp: httpx.Response) -> int:
    """PostgREST exact count: Content-Range: 0-49/123 (or */0 when empty)."""
    total = resp.headers.get("content-range", "").rpartition("/")[2]
    return int(total) if total.isdigit() else 0


class SupabaseAuthClient:
    """
    Thin async client over Supabase Auth (GoTrue) and PostgREST.

    Uses the service role key for profile reads and admin user creation;
    sign-in uses the anon key.
    """

    def __init__(
        self,
        url: str,
        service_key: str,
        anon_key: Optional[str] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self._url = url.rstrip("/")
        self._service_key = service_key
        self._anon_key = anon_key or service_key
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    def _headers(self, bearer: str, apikey: Optional[str] = None) -> Dict[str, str]:
        return {
            "apikey": apikey or self._service_key,
            "Authorization": f"Bearer {bearer}",
            "Content-Type": "application/json",
        }

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._http.request(method, f"{self._url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            logger.error(f"Supabase request failed: {method} {path}: {exc}")
            raise UpstreamServiceError("Authentication service unavailable") from exc

    async def get_user(self, access_token: str) -> AuthenticatedUser:
        """Resolve an access token to the caller, including plan and admin flag."""
        resp = await self._send("GET", "/auth/v1/user", headers=self._headers(access_token))
        if resp.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired token")
        if resp.status_code != 200:
            logger.error(f"Token verification failed ({resp.status_code}): {resp.text}")
            raise UpstreamServiceError("Authentication service unavailable")

        user = resp.json()
        profile = await self.get_profile(user["id"])
        return AuthenticatedUser(
            id=user["id"],
            email=user.get("email") or "",
            plan=profile.get("plan") or DEFAULT_PLAN,
            is_admin=profile.get("is_admin") is True,
        )

    async def get_profile(self, user_id: str, columns: str = "plan,is_admin,name") -> Dict[str, Any]:
        resp = await self._send(
            "GET",
            "/rest/v1/profiles",
            headers=self._headers(self._service_key),
            params={"id": f"eq.{user_id}", "select": columns, "limit": "1"},
        )
        if resp.status_code != 200:
            logger.error(f"Profile fetch failed ({resp.status_code}): {resp.text}")
            raise UpstreamServiceError("Failed to fetch user profile")
        rows = resp.json()
        if not rows:
            raise NotFoundError("User profile not found")
        return rows[0]

    async def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        resp = await self._send(
            "POST",
            "/auth/v1/token",
            headers=self._headers(self._anon_key, apikey=self._anon_key),
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if resp.status_code in (400, 401):
            raise AuthenticationError("Invalid credentials")
        if resp.status_code != 200:
            logger.error(f"Login failed ({resp.status_code}): {resp.text}")
            raise UpstreamServiceError("Authentication service unavailable")
        return resp.json()

    async def create_user(self, email: str, password: str, name: Optional[str] = None) -> Dict[str, Any]:
        resp = await self._send(
            "POST",
            "/auth/v1/admin/users",
            headers=self._headers(self._service_key),
            json={
                "email": email,
                "password": password,
                "email_confirm": True,
                "user_metadata": {"name": name or email.split("@")[0]},
            },
        )
        if resp.status_code in (400, 409, 422):
            body = resp.json() if resp.content else {}
            raise ValidationError(body.get("msg") or body.get("message") or "Signup failed")
        if resp.status_code not in (200, 201):
            logger.error(f"Signup failed ({resp.status_code}): {resp.text}")
            raise UpstreamServiceError("Authentication service unavailable")
        return resp.json()

    async def refresh_session(self, refresh_token: str) -> Dict[str, Any]:
        resp = await self._send(
            "POST",
            "/auth/v1/token",
            headers=self._headers(self._anon_key, apikey=self._anon_key),
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        if resp.status_code in (400, 401):
            raise AuthenticationError("Invalid refresh token")
        if resp.status_code != 200:
            logger.error(f"Token refresh failed ({resp.status_code}): {resp.text}")
            raise UpstreamServiceError("Authentication service unavailable")
        return resp.json()

    async def send_password_reset(self, email: str, redirect_to: Optional[str] = None) -> bool:
        """Ask Supabase to mail a recovery link. False when Supabase refused."""
        resp = await self._send(
            "POST",
            "/auth/v1/recover",
            headers=self._headers(self._anon_key, apikey=self._anon_key),
            params={"redirect_to": redirect_to} if redirect_to else None,
            json={"email": email},
        )
        if resp.status_code != 200:
            logger.error(f"Password reset request failed ({resp.status_code}): {resp.text}")
            return False
        return True

    async def reset_password(self, access_token: str, new_password: str) -> None:
        """Set a new password for the owner of a recovery access token."""
        resp = await self._send("GET", "/auth/v1/user", headers=self._headers(access_token))
        if resp.status_code != 200:
            raise ValidationError("Invalid or expired token")
        user_id = resp.json()["id"]

        resp = await self._send(
            "PUT",
            f"/auth/v1/admin/users/{user_id}",
            headers=self._headers(self._service_key),
            json={"password": new_password},
        )
        if resp.status_code != 200:
            logger.error(f"Password update failed ({resp.status_code}): {resp.text}")
            raise UpstreamServiceError("Password update failed")

    async def get_auth_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        resp = await self._send(
            "GET",
            f"/auth/v1/admin/users/{user_id}",
            headers=self._headers(self._service_key),
        )
        if resp.status_code != 200:
            return None
        return resp.json()

    async def list_profiles(
        self,
        *,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Newest profiles first, with the exact total for the filter."""
        params = {
            "select": PROFILE_ADMIN_COLUMNS,
            "order": "created_at.desc",
            "limit": str(limit),
            "offset": str(offset),
        }
        if status:
            params["approval_status"] = f"eq.{status}"
        resp = await self._send(
            "GET",
            "/rest/v1/profiles",
            headers={**self._headers(self._service_key), "Prefer": "count=exact"},
            params=params,
        )
        if resp.status_code not in (200, 206):
            logger.error(f"Profile list failed ({resp.status_code}): {resp.text}")
            raise UpstreamServiceError("Failed to fetch users")
        return resp.json(), _content_range_total(resp)

    async def count_profiles(self, **filters: str) -> int:
        params = {"select": "id", **filters}
        resp = await self._send(
            "HEAD",
            "/rest/v1/profiles",
            headers={**self._headers(self._service_key), "Prefer": "count=exact"},
            params=params,
        )
        if resp.status_code not in (200, 206):
            logger.error(f"Profile count failed ({resp.status_code})")
            raise UpstreamServiceError("Failed to fetch user stats")
        return _content_range_total(resp)

    async def update_profile(self, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._send(
            "PATCH",
            "/rest/v1/profiles",
            headers={**self._headers(self._service_key), "Prefer": "return=representation"},
            params={"id": f"eq.{user_id}"},
            json=changes,
        )
        if resp.status_code != 200:
            logger.error(f"Profile update failed ({resp.status_code}): {resp.text}")
            raise UpstreamServiceError("Failed to update user")
        rows = resp.json()
        if not rows:
            raise NotFoundError("User profile not found")
        return rows[0]

    async def aclose(self) -> None:
        await self._http.aclose()


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise AuthenticationError("No token provided")
    token = auth_header[7:].strip()
    if not token:
        raise AuthenticationError("No token provided")
    return token


async def get_current_user(request: Request) -> AuthenticatedUser:
    """
    FastAPI dependency: authenticate the caller.

    The resolved user is also stored on request.state.user so guards that
    run later (user-keyed rate limits) can read it.

    Raises:
        AuthenticationError 401: missing, invalid or expired token
    """
    token = _bearer_token(request)
    services = getattr(request.app.state, "services", None)
    client = getattr(services, "auth_client", None)
    if client is None:
        raise UpstreamServiceError("Authentication is not configured")

    user = await client.get_user(token)
    request.state.user = user
    return user


def ensure_admin(user: AuthenticatedUser, request: Request) -> AuthenticatedUser:
    if not user.is_admin:
        log_event(
            "warning",
            "admin.denied",
            user_id=user.id,
            error_code="forbidden",
            extra={"method": request.method, "path": request.url.path},
        )
        raise PermissionError("Admin access required. This incident will be logged.")
    log_event("info", "admin.authorized", user_id=user.id, extra={"path": request.url.path})
    return user
