"""Accounting periods for metered features (UTC calendar day / month)."""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from backend.models.plan import Feature


DAILY_FEATURES = frozenset({Feature.ANALYSES})
MONTHLY_FEATURES = frozenset({Feature.API})

# Counters outlive their period a little so late readers still see them.
DAILY_KEY_TTL = 2 * 24 * 60 * 60
MONTHLY_KEY_TTL = 62 * 24 * 60 * 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize(now: Optional[datetime]) -> datetime:
    if now is None:
        return utc_now()
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def is_metered(feature: Feature) -> bool:
    return feature in DAILY_FEATURES or feature in MONTHLY_FEATURES


def period_key(feature: Feature, now: Optional[datetime] = None) -> str:
    """YYYY-MM-DD for daily features, YYYY-MM for monthly ones."""
    current = _normalize(now)
    if feature in DAILY_FEATURES:
        return current.strftime("%Y-%m-%d")
    if feature in MONTHLY_FEATURES:
        return current.strftime("%Y-%m")
    raise ValueError(f"Feature {feature.value!r} is not metered")


def next_period_start(feature: Feature, now: Optional[datetime] = None) -> datetime:
    current = _normalize(now)
    if feature in DAILY_FEATURES:
        start_of_day = current.replace(hour=0, minute=0, second=0, microsecond=0)
        return start_of_day + timedelta(days=1)
    if feature in MONTHLY_FEATURES:
        if current.month == 12:
            return current.replace(year=current.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        return current.replace(month=current.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"Feature {feature.value!r} is not metered")


def seconds_until_reset(feature: Feature, now: Optional[datetime] = None) -> int:
    """Whole seconds (rounded up, at least 1) until the next period begins."""
    current = _normalize(now)
    remaining = (next_period_start(feature, current) - current).total_seconds()
    return max(1, math.ceil(remaining))


def ttl_for_period_key(key: str) -> int:
    """Store TTL for a counter, inferred from the key's granularity."""
    return DAILY_KEY_TTL if len(key) == len("YYYY-MM-DD") else MONTHLY_KEY_TTL
