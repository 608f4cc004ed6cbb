"""
backend/models/decision.py

Explicit admission results returned by the quota pre-check and the
request rate limiter. Only the HTTP boundary turns a Deny into an error
response.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class DenyKind(str, Enum):
    LIMIT_REACHED = "limit_reached"
    FEATURE_DISABLED = "feature_disabled"


@dataclass(frozen=True)
class Allow:
    remaining: Optional[int] = None  # None when unlimited or not metered

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Deny:
    kind: DenyKind
    reason: str
    limit: Optional[int] = None
    retry_after: Optional[int] = None  # seconds until the period boundary

    @property
    def allowed(self) -> bool:
        return False


QuotaDecision = Union[Allow, Deny]


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one limiter consume() call."""
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # whole seconds; 0 when allowed
    reset_after_ms: int  # until the window (or block) ends
