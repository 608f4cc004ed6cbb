"""
backend/features/usage/service.py

Usage accounting.

Handles:
- Recording one unit of consumption after a billable operation succeeded

Recording is best-effort: the caller has already paid for the work, so a
store failure is logged and counted, never surfaced to the client.
"""

from datetime import datetime
from typing import Optional

from backend.core.logging import log_event
from backend.core.metrics import usage_record_failures_total
from backend.features.usage.periods import is_metered, period_key
from backend.features.usage.store import QuotaStore
from backend.models.plan import Feature


class UsageRecorder:
    def __init__(self, store: QuotaStore):
        self._store = store

    @property
    def store(self) -> QuotaStore:
        return self._store

    async def record(self, user_id: str, feature: Feature, now: Optional[datetime] = None) -> Optional[int]:
        """
        Increment the counter for the feature's current period.

        Returns the new count, or None when the feature is not metered or
        the store failed.
        """
        if not is_metered(feature):
            return None

        key = period_key(feature, now)
        try:
            count = await self._store.increment_and_get(user_id, key)
        except Exception as exc:  # CancelledError is a BaseException and still propagates
            usage_record_failures_total.inc(labels={"feature": feature.value})
            log_event(
                "error",
                "usage.record_failed",
                user_id=user_id,
                feature=feature.value,
                error_code=getattr(exc, "code", "internal_error"),
                extra={"period_key": key, "store": self._store.name, "error": str(exc)},
            )
            return None

        log_event(
            "debug",
            "usage.recorded",
            user_id=user_id,
            feature=feature.value,
            extra={"period_key": key, "count": count},
        )
        return count
