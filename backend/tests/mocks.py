from datetime import datetime, timedelta
from typing import Dict, Optional

from backend.core.errors import (
    AuthenticationError,
    NotFoundError,
    StoreUnavailableError,
    UpstreamServiceError,
    ValidationError,
)
from backend.features.usage.store import InMemoryQuotaStore
from backend.models.analysis import ExplanationResult
from backend.models.user import AuthenticatedUser


class FakeClock:
    """Epoch seconds, advanced by hand."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start

    def advance(self, seconds: float):
        self.current += seconds

    def __call__(self):
        return self.current


class FakeNow:
    """UTC datetime source for period keys."""

    def __init__(self, start: datetime):
        self.current = start

    def advance(self, **delta):
        self.current += timedelta(**delta)

    def __call__(self):
        return self.current


class FakeAuthClient:
    def __init__(self, users: Dict[str, AuthenticatedUser]):
        self.users = users
        self.profiles = {
            user.id: {
                "id": user.id,
                "plan": user.plan,
                "is_admin": user.is_admin,
                "name": user.email,
                "approval_status": "pending",
                "created_at": "2025-01-15T09:00:00+00:00",
            }
            for user in users.values()
        }
        self.created = []
        self.reset_requests = []
        self.passwords = {}

    async def get_user(self, access_token: str) -> AuthenticatedUser:
        user = self.users.get(access_token)
        if user is None:
            raise AuthenticationError("Invalid or expired token")
        return user

    async def get_profile(self, user_id: str, columns: Optional[str] = None) -> dict:
        profile = self.profiles.get(user_id)
        if profile is None:
            raise NotFoundError("User profile not found")
        return profile

    async def refresh_session(self, refresh_token: str) -> dict:
        token = refresh_token.removeprefix("refresh-")
        if token not in self.users:
            raise AuthenticationError("Invalid refresh token")
        return {"access_token": token, "refresh_token": f"refresh-{token}", "expires_in": 3600, "expires_at": 1_700_003_600}

    async def send_password_reset(self, email: str, redirect_to: Optional[str] = None) -> bool:
        self.reset_requests.append((email, redirect_to))
        return any(user.email == email for user in self.users.values())

    async def reset_password(self, access_token: str, new_password: str) -> None:
        user = self.users.get(access_token)
        if user is None:
            raise ValidationError("Invalid or expired token")
        self.passwords[user.id] = new_password

    async def get_auth_user(self, user_id: str) -> Optional[dict]:
        for user in self.users.values():
            if user.id == user_id:
                return {"id": user.id, "email": user.email}
        return None

    async def list_profiles(self, *, status=None, limit=50, offset=0):
        rows = [p for p in self.profiles.values() if status is None or p["approval_status"] == status]
        return rows[offset:offset + limit], len(rows)

    async def count_profiles(self, **filters: str) -> int:
        status = filters.get("approval_status", "").removeprefix("eq.")
        since = filters.get("created_at", "").removeprefix("gte.")
        return sum(
            1 for p in self.profiles.values()
            if (not status or p["approval_status"] == status) and p["created_at"] >= since
        )

    async def update_profile(self, user_id: str, changes: dict) -> dict:
        profile = self.profiles.get(user_id)
        if profile is None:
            raise NotFoundError("User profile not found")
        profile.update(changes)
        return dict(profile)

    async def sign_in(self, email: str, password: str) -> dict:
        for token, user in self.users.items():
            if user.email == email and password == "correct-horse":
                return {
                    "access_token": token,
                    "refresh_token": f"refresh-{token}",
                    "expires_in": 3600,
                    "expires_at": 1_700_003_600,
                    "user": {"id": user.id, "email": user.email},
                }
        raise AuthenticationError("Invalid credentials")

    async def create_user(self, email: str, password: str, name: Optional[str] = None) -> dict:
        self.created.append(email)
        return {"id": f"new-{len(self.created)}", "email": email}

    async def aclose(self):
        return None


class StubGenerator:
    """Explanation generator that never calls the network."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def generate(self, code: str, language: str, level: str) -> ExplanationResult:
        self.calls += 1
        if self.fail:
            raise UpstreamServiceError("Failed to generate explanation")
        return ExplanationResult(
            content=f"Explains {len(code)} characters of {language}",
            summary="A short explanation",
            key_concepts=["variables"],
            complexity_score=2,
            model="stub-model",
            generation_time_ms=5,
        )


class BrokenQuotaStore:
    """Every operation fails like an unreachable backend."""

    name = "broken"

    def __init__(self):
        self.increments = 0

    async def get_count(self, user_id: str, period_key: str) -> int:
        raise StoreUnavailableError("store down")

    async def increment_and_get(self, user_id: str, period_key: str) -> int:
        self.increments += 1
        raise StoreUnavailableError("store down")

    async def ping(self) -> bool:
        return False


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class ResetOnIncrementStore(InMemoryQuotaStore):
    """Reads work; increments fail with a raw driver error."""

    name = "reset-on-increment"

    def __init__(self):
        super().__init__()
        self.increments = 0

    async def increment_and_get(self, user_id: str, period_key: str) -> int:
        self.increments += 1
        raise ConnectionResetError("connection reset by peer")
