from datetime import datetime, timezone

import pytest

from backend.core.metrics import usage_record_failures_total
from backend.features.usage.service import UsageRecorder
from backend.features.usage.store import InMemoryQuotaStore
from backend.models.plan import Feature
from backend.tests.mocks import BrokenQuotaStore, ResetOnIncrementStore


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_record_increments_period_counter():
    store = InMemoryQuotaStore()
    recorder = UsageRecorder(store)

    assert await recorder.record("u1", Feature.ANALYSES, NOW) == 1
    assert await recorder.record("u1", Feature.ANALYSES, NOW) == 2
    assert await recorder.record("u1", Feature.API, NOW) == 1

    assert await store.get_count("u1", "2025-01-15") == 2
    assert await store.get_count("u1", "2025-01") == 1


@pytest.mark.asyncio
async def test_flag_only_features_are_not_recorded():
    recorder = UsageRecorder(InMemoryQuotaStore())
    assert await recorder.record("u1", Feature.TESTS, NOW) is None


@pytest.mark.asyncio
async def test_store_failure_is_not_raised():
    store = BrokenQuotaStore()
    recorder = UsageRecorder(store)

    assert await recorder.record("u1", Feature.ANALYSES, NOW) is None
    assert store.increments == 1
    assert usage_record_failures_total.value({"feature": "analyses"}) == 1


@pytest.mark.asyncio
async def test_unexpected_store_error_is_not_raised():
    store = ResetOnIncrementStore()
    recorder = UsageRecorder(store)

    assert await recorder.record("u1", Feature.ANALYSES, NOW) is None
    assert store.increments == 1
    assert usage_record_failures_total.value({"feature": "analyses"}) == 1
