"""
Application service wiring.

Backends are selected once at startup and held on app.state.services;
routes read them through get_services().
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping, Optional

from fastapi import Request
from redis import asyncio as aioredis
from sqlalchemy.engine import Engine

from backend.core.auth import SupabaseAuthClient
from backend.core.config import Settings
from backend.core.errors import ConfigurationError
from backend.core.ratelimit import RateLimiterRegistry, build_rate_limit_store
from backend.features.analysis.generator import AnthropicExplanationGenerator, ExplanationGenerator
from backend.features.analysis.repository import (
    AnalysisRepository,
    InMemoryAnalysisRepository,
    SqlAnalysisRepository,
)
from backend.features.analysis.service import AnalysisService
from backend.features.entitlements.service import QuotaEnforcer
from backend.features.plans.service import PlanPolicyResolver, load_plan_policies
from backend.features.usage.periods import utc_now
from backend.features.usage.service import UsageRecorder
from backend.features.usage.store import QuotaStore, build_quota_store
from backend.models.plan import PlanPolicy


@dataclass
class AppServices:
    settings: Settings
    resolver: PlanPolicyResolver
    quota_store: QuotaStore
    enforcer: QuotaEnforcer
    recorder: UsageRecorder
    rate_limiters: RateLimiterRegistry
    analysis: AnalysisService
    auth_client: Optional[SupabaseAuthClient] = None
    redis: Optional[aioredis.Redis] = None
    engine: Optional[Engine] = None
    now: Callable[[], datetime] = field(default=utc_now)


def build_services(
    settings: Settings,
    *,
    redis_client: Optional[aioredis.Redis] = None,
    engine: Optional[Engine] = None,
    policies: Optional[Mapping[str, PlanPolicy]] = None,
    quota_store: Optional[QuotaStore] = None,
    generator: Optional[ExplanationGenerator] = None,
    repository: Optional[AnalysisRepository] = None,
    auth_client: Optional[SupabaseAuthClient] = None,
    clock: Callable[[], float] = time.time,
    now: Callable[[], datetime] = utc_now,
) -> AppServices:
    """Assemble every service once. Explicit arguments override settings."""
    timeout = settings.STORE_TIMEOUT_SECONDS
    resolver = PlanPolicyResolver(policies if policies is not None else load_plan_policies(settings.PLAN_POLICIES_FILE))

    store = quota_store or build_quota_store(
        settings.QUOTA_STORE_BACKEND,
        redis_client=redis_client,
        engine=engine,
        timeout=timeout,
    )
    recorder = UsageRecorder(store)

    limiters = RateLimiterRegistry(
        build_rate_limit_store(redis_client, timeout=timeout),
        clock=clock,
        enabled=settings.RATE_LIMIT_ENABLED,
    )

    if generator is None:
        if not settings.ANTHROPIC_API_KEY:
            raise ConfigurationError("ANTHROPIC_API_KEY is required for code analysis")
        generator = AnthropicExplanationGenerator(
            settings.ANTHROPIC_API_KEY,
            settings.ANTHROPIC_MODEL,
            max_tokens=settings.ANTHROPIC_MAX_TOKENS,
        )
    if repository is None:
        repository = SqlAnalysisRepository(engine) if engine is not None else InMemoryAnalysisRepository()

    if auth_client is None and settings.SUPABASE_URL and settings.SUPABASE_SERVICE_KEY:
        auth_client = SupabaseAuthClient(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_KEY,
            settings.SUPABASE_ANON_KEY,
        )

    return AppServices(
        settings=settings,
        resolver=resolver,
        quota_store=store,
        enforcer=QuotaEnforcer(resolver, store),
        recorder=recorder,
        rate_limiters=limiters,
        analysis=AnalysisService(repository, generator, recorder),
        auth_client=auth_client,
        redis=redis_client,
        engine=engine,
        now=now,
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services
