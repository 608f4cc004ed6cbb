from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend.core.errors import ConfigurationError
from backend.core.guards import client_ip
from backend.core.metrics import ratelimit_block_total, store_errors_total
from backend.core.ratelimit import (
    CONSUME_SCRIPT,
    LIMITER_CONFIGS,
    InMemoryRateLimitStore,
    LimiterConfig,
    RateLimiter,
    RateLimiterRegistry,
    RedisRateLimitStore,
    build_rate_limit_store,
)
from backend.tests.mocks import FakeClock


def make_limiter(config, clock=None, store=None, enabled=True):
    return RateLimiter(config, store or InMemoryRateLimitStore(), clock=clock or FakeClock(), enabled=enabled)


def test_default_limiter_table():
    assert LIMITER_CONFIGS["login"] == LimiterConfig("login", points=5, duration=300, block_duration=900)
    assert LIMITER_CONFIGS["signup"].points == 3
    assert LIMITER_CONFIGS["analyze"].points == 10
    assert LIMITER_CONFIGS["general"].duration == 60
    assert LIMITER_CONFIGS["admin"].block_duration == 300


@pytest.mark.asyncio
async def test_allows_up_to_points_then_rejects():
    limiter = make_limiter(LimiterConfig("t", points=3, duration=60))

    remaining = [(await limiter.consume("ip:1")).remaining for _ in range(3)]
    assert remaining == [2, 1, 0]

    decision = await limiter.consume("ip:1")
    assert not decision.allowed
    assert decision.retry_after == 60
    assert ratelimit_block_total.value({"limiter": "t"}) == 1


@pytest.mark.asyncio
async def test_window_resets_without_block():
    clock = FakeClock()
    limiter = make_limiter(LimiterConfig("t", points=2, duration=60), clock=clock)

    await limiter.consume("k")
    await limiter.consume("k")
    clock.advance(30)
    denied = await limiter.consume("k")
    assert not denied.allowed
    assert denied.retry_after == 30

    clock.advance(30)
    assert (await limiter.consume("k")).allowed


@pytest.mark.asyncio
async def test_block_outlives_window():
    clock = FakeClock()
    limiter = make_limiter(LIMITER_CONFIGS["login"], clock=clock)

    for _ in range(5):
        assert (await limiter.consume("ip:10.0.0.1")).allowed

    sixth = await limiter.consume("ip:10.0.0.1")
    assert not sixth.allowed
    assert sixth.retry_after == 900

    # window (300s) is long gone, the block (900s) is not
    clock.advance(400)
    still_blocked = await limiter.consume("ip:10.0.0.1")
    assert not still_blocked.allowed
    assert still_blocked.retry_after == 500
    assert still_blocked.remaining == 0

    clock.advance(500)
    assert (await limiter.consume("ip:10.0.0.1")).allowed


@pytest.mark.asyncio
async def test_blocked_requests_do_not_extend_block():
    clock = FakeClock()
    limiter = make_limiter(LimiterConfig("t", points=1, duration=10, block_duration=100), clock=clock)

    await limiter.consume("k")
    await limiter.consume("k")  # starts the block
    for _ in range(5):
        clock.advance(10)
        await limiter.consume("k")

    clock.advance(50)
    assert (await limiter.consume("k")).allowed


@pytest.mark.asyncio
async def test_keys_and_limiters_are_independent():
    store = InMemoryRateLimitStore()
    clock = FakeClock()
    login = make_limiter(LimiterConfig("login", points=1, duration=60), clock=clock, store=store)
    signup = make_limiter(LimiterConfig("signup", points=1, duration=60), clock=clock, store=store)

    assert (await login.consume("ip:a")).allowed
    assert (await login.consume("ip:b")).allowed
    assert (await signup.consume("ip:a")).allowed
    assert not (await login.consume("ip:a")).allowed


@pytest.mark.asyncio
async def test_disabled_limiter_always_allows():
    limiter = make_limiter(LimiterConfig("t", points=1, duration=60), enabled=False)
    for _ in range(5):
        decision = await limiter.consume("k")
        assert decision.allowed
        assert decision.remaining == 1


@pytest.mark.asyncio
async def test_store_failure_falls_back_to_process_limits():
    client = MagicMock()
    client.register_script.return_value = AsyncMock(side_effect=RedisConnectionError("down"))
    limiter = make_limiter(LIMITER_CONFIGS["login"], store=RedisRateLimitStore(client))

    decisions = [await limiter.consume("ip:1") for _ in range(6)]

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert decisions[-1].retry_after == 900
    assert store_errors_total.value({"store": "redis", "operation": "consume"}) == 6
    assert ratelimit_block_total.value({"limiter": "login"}) == 1


@pytest.mark.asyncio
async def test_registry_limiters_share_one_fallback():
    client = MagicMock()
    client.register_script.return_value = AsyncMock(side_effect=RedisConnectionError("down"))
    registry = RateLimiterRegistry(RedisRateLimitStore(client), clock=FakeClock())

    assert registry.get("login").fallback is registry.fallback
    assert registry.get("admin").fallback is registry.fallback

    for _ in range(5):
        assert (await registry.consume("admin", "ip:1")).allowed
    assert not (await registry.consume("admin", "ip:1")).allowed
    assert (await registry.consume("login", "ip:1")).allowed


def make_request(forwarded=None, peer="10.1.1.1", trust_proxy=False, hops=1):
    settings = SimpleNamespace(TRUST_PROXY=trust_proxy, TRUSTED_PROXY_HOPS=hops)
    return SimpleNamespace(
        app=SimpleNamespace(state=SimpleNamespace(services=SimpleNamespace(settings=settings))),
        headers={"x-forwarded-for": forwarded} if forwarded else {},
        client=SimpleNamespace(host=peer),
    )


def test_client_ip_ignores_forwarded_header_by_default():
    assert client_ip(make_request("198.51.100.7")) == "10.1.1.1"


def test_client_ip_uses_entry_appended_by_trusted_proxy():
    request = make_request("6.6.6.6, 198.51.100.7", trust_proxy=True)
    assert client_ip(request) == "198.51.100.7"


def test_client_ip_counts_trusted_hops():
    request = make_request("6.6.6.6, 198.51.100.7, 10.0.0.2", trust_proxy=True, hops=2)
    assert client_ip(request) == "198.51.100.7"

    short = make_request("198.51.100.7", trust_proxy=True, hops=2)
    assert client_ip(short) == "10.1.1.1"


@pytest.mark.asyncio
async def test_redis_store_runs_script_with_window_and_block_keys():
    script = AsyncMock(return_value=[1, 2, 250000])
    client = MagicMock()
    client.register_script.return_value = script
    clock = FakeClock(start=1000.0)
    limiter = make_limiter(LIMITER_CONFIGS["login"], clock=clock, store=RedisRateLimitStore(client))

    decision = await limiter.consume("ip:1.2.3.4")

    client.register_script.assert_called_once_with(CONSUME_SCRIPT)
    script.assert_awaited_once_with(
        keys=["rl:login:ip:1.2.3.4", "rl:block:login:ip:1.2.3.4"],
        args=[1_000_000, 5, 300_000, 900_000],
    )
    assert decision.allowed
    assert decision.remaining == 3
    assert decision.reset_after_ms == 250000


@pytest.mark.asyncio
async def test_redis_store_blocked_result():
    client = MagicMock()
    client.register_script.return_value = AsyncMock(return_value=[0, -1, 4500])
    limiter = make_limiter(LIMITER_CONFIGS["admin"], store=RedisRateLimitStore(client))

    decision = await limiter.consume("ip:1")

    assert not decision.allowed
    assert decision.remaining == 0
    assert decision.retry_after == 5


def test_registry_rejects_unknown_limiter():
    registry = RateLimiterRegistry(InMemoryRateLimitStore())
    assert registry.get("login").config.points == 5
    with pytest.raises(ConfigurationError):
        registry.get("uploads")


def test_build_store_prefers_redis():
    client = MagicMock()
    assert build_rate_limit_store(client).name == "redis"
    assert build_rate_limit_store(None).name == "memory"
