"""
backend/features/entitlements/service.py

Quota pre-check.

Handles:
- Feature flag gating (flag-only features never touch the store)
- Unlimited plans short-circuit without a store read
- Metered features: deny once the period counter has reached the limit

The pre-check only reads. Consumption is recorded separately, after the
operation succeeds, so two concurrent pre-checks near the limit can both
pass; the overshoot is bounded by the number of in-flight requests.
"""

from datetime import datetime
from typing import Optional

from backend.core.logging import log_event
from backend.core.metrics import quota_denied_total
from backend.features.plans.service import PlanPolicyResolver
from backend.features.usage.periods import is_metered, period_key, seconds_until_reset
from backend.features.usage.store import QuotaStore
from backend.models.decision import Allow, Deny, DenyKind, QuotaDecision
from backend.models.plan import Feature, UNLIMITED
from backend.models.usage import FeatureUsage, UsageSummary


FEATURE_LABELS = {
    Feature.ANALYSES: "Code analysis",
    Feature.TESTS: "Test generation",
    Feature.EXERCISES: "Customization exercises",
    Feature.PROJECTS: "Project simulations",
    Feature.API: "API access",
}


def limit_message(feature: Feature, limit: int) -> str:
    if feature is Feature.ANALYSES:
        return f"Daily analysis limit reached ({limit} analyses/day). Please upgrade your plan."
    return f"Monthly API limit reached ({limit} requests/month). Please upgrade your plan."


def disabled_message(feature: Feature) -> str:
    return f"{FEATURE_LABELS[feature]} is not available in your plan"


class QuotaEnforcer:
    """Read-only admission check against the caller's plan."""

    def __init__(self, resolver: PlanPolicyResolver, store: QuotaStore):
        self._resolver = resolver
        self._store = store

    async def precheck(
        self,
        user_id: str,
        plan_name: str,
        feature: Feature,
        now: Optional[datetime] = None,
    ) -> QuotaDecision:
        """
        Decide whether one more unit of `feature` may be consumed.

        Raises:
            ConfigurationError: plan_name has no policy
            StoreUnavailableError: counter read failed or timed out
        """
        policy = self._resolver.resolve(plan_name)

        if not policy.feature_enabled(feature):
            return self._deny(
                user_id,
                feature,
                Deny(kind=DenyKind.FEATURE_DISABLED, reason=disabled_message(feature)),
            )

        limit = policy.limit_for(feature)
        if limit is None or not is_metered(feature):
            return Allow()
        if limit == UNLIMITED:
            return Allow()

        used = await self._store.get_count(user_id, period_key(feature, now))
        if used >= limit:
            return self._deny(
                user_id,
                feature,
                Deny(
                    kind=DenyKind.LIMIT_REACHED,
                    reason=limit_message(feature, limit),
                    limit=limit,
                    retry_after=seconds_until_reset(feature, now),
                ),
                used=used,
            )
        return Allow(remaining=limit - used)

    def _deny(self, user_id: str, feature: Feature, decision: Deny, used: Optional[int] = None) -> Deny:
        quota_denied_total.inc(labels={"feature": feature.value, "reason": decision.kind.value})
        log_event(
            "info",
            "quota.denied",
            user_id=user_id,
            feature=feature.value,
            error_code=decision.kind.value,
            extra={"used": used, "limit": decision.limit, "retry_after": decision.retry_after},
        )
        return decision

    async def _feature_usage(self, user_id: str, feature: Feature, limit: int, now: Optional[datetime]) -> FeatureUsage:
        key = period_key(feature, now)
        used = await self._store.get_count(user_id, key)
        return FeatureUsage(
            feature=feature.value,
            period_key=key,
            used=used,
            limit=limit,
            remaining=None if limit == UNLIMITED else max(0, limit - used),
            resets_in_seconds=seconds_until_reset(feature, now),
        )

    async def usage_summary(self, user_id: str, plan_name: str, now: Optional[datetime] = None) -> UsageSummary:
        """Current-period usage and feature flags for dashboards."""
        policy = self._resolver.resolve(plan_name)
        return UsageSummary(
            user_id=user_id,
            plan=policy.plan_name,
            analyses=await self._feature_usage(user_id, Feature.ANALYSES, policy.daily_analyses_limit, now),
            api=await self._feature_usage(user_id, Feature.API, policy.api_requests_per_month, now),
            features={feature.value: policy.feature_enabled(feature) for feature in Feature},
        )
