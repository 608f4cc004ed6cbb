from pydantic import BaseModel, ConfigDict


DEFAULT_PLAN = "free"


class AuthenticatedUser(BaseModel):
    """Caller identity resolved from a Supabase access token."""
    model_config = ConfigDict(frozen=True)

    id: str
    email: str = ""
    plan: str = DEFAULT_PLAN
    is_admin: bool = False
