"""
backend/models/usage.py

Usage counter views.

Counters live in the quota store keyed by (user_id, period_key); these
models are read-only snapshots for API responses. period_key is a UTC
calendar day (YYYY-MM-DD) for analyses or a UTC calendar month (YYYY-MM)
for API calls.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class FeatureUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    feature: str
    period_key: str
    used: int
    limit: int  # -1 = unlimited
    remaining: Optional[int] = None  # None when unlimited
    resets_in_seconds: int


class UsageSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan: str
    analyses: FeatureUsage
    api: FeatureUsage
    features: dict[str, bool]
