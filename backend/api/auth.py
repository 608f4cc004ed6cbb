"""Account routes proxied to Supabase Auth, each behind its IP rate limit."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.core.auth import get_current_user
from backend.core.errors import UpstreamServiceError
from backend.core.guards import rate_limit
from backend.core.logging import LOGGER_NAME
from backend.core.services import AppServices, get_services
from backend.models.user import DEFAULT_PLAN, AuthenticatedUser

logger = logging.getLogger(LOGGER_NAME)

router = APIRouter(prefix="/api/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 8
ME_PROFILE_COLUMNS = "name,plan,avatar_url,onboarding_completed,created_at"


class Credentials(BaseModel):
    email: str
    password: str

    @field_validator("email", "password")
    @classmethod
    def required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Email and password are required")
        return value


class SignupIn(Credentials):
    name: Optional[str] = None

    @field_validator("password")
    @classmethod
    def long_enough(cls, value: str) -> str:
        if len(value) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return value


class RefreshIn(BaseModel):
    refresh_token: str = Field(alias="refreshToken", min_length=1)


class ForgotPasswordIn(BaseModel):
    email: str = Field(min_length=1)


class ResetPasswordIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(min_length=1)
    new_password: str = Field(alias="newPassword", min_length=1)

    @field_validator("new_password")
    @classmethod
    def long_enough(cls, value: str) -> str:
        if len(value) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return value


def _session_view(session: dict) -> dict:
    return {
        "accessToken": session.get("access_token"),
        "refreshToken": session.get("refresh_token"),
        "expiresIn": session.get("expires_in"),
        "expiresAt": session.get("expires_at"),
    }


def _auth_client(services: AppServices):
    if services.auth_client is None:
        raise UpstreamServiceError("Authentication is not configured")
    return services.auth_client


@router.post("/signup", dependencies=[Depends(rate_limit("signup"))])
async def signup(data: SignupIn, services: AppServices = Depends(get_services)):
    created = await _auth_client(services).create_user(data.email, data.password, data.name)
    logger.info("auth.signup", extra={"user_id": created.get("id")})
    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "data": {
                "user": {
                    "id": created.get("id"),
                    "email": created.get("email"),
                    "name": data.name or data.email.split("@")[0],
                    "plan": DEFAULT_PLAN,
                }
            },
        },
    )


@router.post("/login", dependencies=[Depends(rate_limit("login"))])
async def login(data: Credentials, services: AppServices = Depends(get_services)):
    session = await _auth_client(services).sign_in(data.email, data.password)
    user = session.get("user") or {}
    profile = await _auth_client(services).get_profile(user["id"]) if user.get("id") else {}
    logger.info("auth.login", extra={"user_id": user.get("id")})
    return {
        "success": True,
        "data": {
            "user": {
                "id": user.get("id"),
                "email": user.get("email"),
                "name": profile.get("name"),
                "plan": profile.get("plan") or DEFAULT_PLAN,
            },
            "session": _session_view(session),
        },
    }


@router.post("/refresh", dependencies=[Depends(rate_limit("general"))])
async def refresh(data: RefreshIn, services: AppServices = Depends(get_services)):
    session = await _auth_client(services).refresh_session(data.refresh_token)
    return {"success": True, "data": {"session": _session_view(session)}}


@router.post("/logout", dependencies=[Depends(rate_limit("general"))])
async def logout():
    # Tokens are stateless; the client discards them.
    return {"success": True, "message": "Logged out successfully"}


@router.get("/me", dependencies=[Depends(rate_limit("general"))])
async def me(
    user: AuthenticatedUser = Depends(get_current_user),
    services: AppServices = Depends(get_services),
):
    profile = await _auth_client(services).get_profile(user.id, columns=ME_PROFILE_COLUMNS)
    return {
        "success": True,
        "data": {
            "user": {
                "id": user.id,
                "email": user.email,
                "name": profile.get("name"),
                "plan": profile.get("plan") or DEFAULT_PLAN,
                "avatarUrl": profile.get("avatar_url"),
                "onboardingCompleted": bool(profile.get("onboarding_completed")),
                "createdAt": profile.get("created_at"),
            }
        },
    }


@router.post("/forgot-password", dependencies=[Depends(rate_limit("signup"))])
async def forgot_password(data: ForgotPasswordIn, services: AppServices = Depends(get_services)):
    """Same answer whether or not the address exists."""
    client = _auth_client(services)
    redirect_to = f"{services.settings.FRONTEND_URL.rstrip('/')}/reset-password"
    try:
        await client.send_password_reset(data.email, redirect_to)
    except UpstreamServiceError as exc:
        logger.error("auth.password_reset_failed", extra={"error_code": exc.code})
    return {"success": True, "message": "If the email exists, a password reset link has been sent"}


@router.post("/reset-password", dependencies=[Depends(rate_limit("general"))])
async def reset_password(data: ResetPasswordIn, services: AppServices = Depends(get_services)):
    await _auth_client(services).reset_password(data.token, data.new_password)
    logger.info("auth.password_reset")
    return {"success": True, "message": "Password reset successfully"}
