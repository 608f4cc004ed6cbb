"""
Fixed-window request limiter with block duration.

- Named limiters (login, signup, analyze, general, admin), keyed by client
  identity (IP before authentication, user id after).
- A window opens on the first request of a fresh key and lasts `duration`
  seconds. Each request consumes one point.
- The request that goes past `points` is rejected and, when
  `block_duration > 0`, starts a block; blocked requests consume nothing.
- Backends: Redis (one Lua script per consume) or an in-process dict.
- When the shared store is unreachable, consumes fall back to per-process
  state: limits still apply, counted per worker.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from backend.core.errors import ConfigurationError, StoreUnavailableError
from backend.core.logging import log_event
from backend.core.metrics import ratelimit_block_total, store_errors_total
from backend.core.timeouts import bounded
from backend.models.decision import RateLimitDecision


@dataclass(frozen=True)
class LimiterConfig:
    name: str
    points: int
    duration: int  # seconds
    block_duration: int = 0  # seconds; 0 = reject until the window expires


LIMITER_CONFIGS: Mapping[str, LimiterConfig] = {
    "login": LimiterConfig("login", points=5, duration=300, block_duration=900),
    "signup": LimiterConfig("signup", points=3, duration=3600, block_duration=3600),
    "analyze": LimiterConfig("analyze", points=10, duration=60, block_duration=300),
    "general": LimiterConfig("general", points=30, duration=60, block_duration=60),
    "admin": LimiterConfig("admin", points=5, duration=60, block_duration=300),
}


# (allowed, points consumed in the window or -1 while blocked, ms until reset)
ConsumeResult = Tuple[bool, int, int]


class RateLimitStore(Protocol):
    name: str

    async def consume(self, key: str, config: LimiterConfig, now_ms: int) -> ConsumeResult:
        ...


@dataclass
class _WindowState:
    consumed: int
    expiry_ms: int
    blocked_until_ms: int = 0


class InMemoryRateLimitStore:
    """Per-process limiter state. Counts are not shared between workers."""

    name = "memory"
    PRUNE_EVERY = 1000

    def __init__(self):
        self._states: Dict[str, _WindowState] = {}
        self._lock = threading.Lock()
        self._calls = 0

    async def consume(self, key: str, config: LimiterConfig, now_ms: int) -> ConsumeResult:
        with self._lock:
            self._calls += 1
            if self._calls % self.PRUNE_EVERY == 0:
                self._prune(now_ms)
            return self._consume_locked(key, config, now_ms)

    def _consume_locked(self, key: str, config: LimiterConfig, now_ms: int) -> ConsumeResult:
        state = self._states.get(key)
        if state is not None and state.blocked_until_ms > now_ms:
            return False, -1, state.blocked_until_ms - now_ms

        if state is None or state.expiry_ms <= now_ms:
            state = _WindowState(consumed=0, expiry_ms=now_ms + config.duration * 1000)
            self._states[key] = state

        state.consumed += 1
        if state.consumed > config.points:
            if config.block_duration > 0:
                block_ms = config.block_duration * 1000
                state.blocked_until_ms = now_ms + block_ms
                return False, state.consumed, block_ms
            return False, state.consumed, state.expiry_ms - now_ms
        return True, state.consumed, state.expiry_ms - now_ms

    def _prune(self, now_ms: int) -> None:
        expired = [
            key for key, state in self._states.items()
            if state.expiry_ms <= now_ms and state.blocked_until_ms <= now_ms
        ]
        for key in expired:
            del self._states[key]


# KEYS[1] window hash {expiry, consumed}; KEYS[2] block marker (value = blocked-until ms)
# ARGV: now_ms, points, duration_ms, block_ms
CONSUME_SCRIPT = """
local now = tonumber(ARGV[1])
local points = tonumber(ARGV[2])
local duration = tonumber(ARGV[3])
local block = tonumber(ARGV[4])

local blocked_until = redis.call('GET', KEYS[2])
if blocked_until and tonumber(blocked_until) > now then
  return {0, -1, tonumber(blocked_until) - now}
end

local expiry = tonumber(redis.call('HGET', KEYS[1], 'expiry') or '0')
if expiry <= now then
  redis.call('DEL', KEYS[1])
  expiry = now + duration
  redis.call('HSET', KEYS[1], 'expiry', expiry)
  redis.call('PEXPIRE', KEYS[1], duration)
end

local consumed = redis.call('HINCRBY', KEYS[1], 'consumed', 1)
if consumed > points then
  if block > 0 then
    redis.call('SET', KEYS[2], now + block, 'PX', block)
    return {0, consumed, block}
  end
  return {0, consumed, expiry - now}
end
return {1, consumed, expiry - now}
"""


class RedisRateLimitStore:
    """Limiter state shared across workers through Redis."""

    name = "redis"

    def __init__(self, client: aioredis.Redis, *, timeout: float = 0.5, key_prefix: str = "rl"):
        self._client = client
        self._timeout = timeout
        self._prefix = key_prefix
        self._script = client.register_script(CONSUME_SCRIPT)

    async def consume(self, key: str, config: LimiterConfig, now_ms: int) -> ConsumeResult:
        keys = [f"{self._prefix}:{key}", f"{self._prefix}:block:{key}"]
        args = [now_ms, config.points, config.duration * 1000, config.block_duration * 1000]
        try:
            result = await bounded(
                self._script(keys=keys, args=args),
                timeout=self._timeout,
                store=self.name,
                operation="consume",
            )
        except (RedisError, OSError) as exc:
            store_errors_total.inc(labels={"store": self.name, "operation": "consume"})
            raise StoreUnavailableError(f"redis rate limit consume failed: {exc}") from exc

        allowed, consumed, reset_ms = (int(value) for value in result)
        return bool(allowed), consumed, max(0, reset_ms)


class RateLimiter:
    """One named limiter bound to a store and a clock (seconds since epoch)."""

    def __init__(
        self,
        config: LimiterConfig,
        store: RateLimitStore,
        *,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
        fallback: Optional[RateLimitStore] = None,
    ):
        self.config = config
        self.store = store
        self.fallback = fallback if fallback is not None else InMemoryRateLimitStore()
        self.clock = clock
        self.enabled = enabled

    def _open(self) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            limit=self.config.points,
            remaining=self.config.points,
            retry_after=0,
            reset_after_ms=0,
        )

    async def consume(self, client_key: str) -> RateLimitDecision:
        if not self.enabled:
            return self._open()

        now_ms = int(self.clock() * 1000)
        key = f"{self.config.name}:{client_key}"
        try:
            allowed, consumed, reset_ms = await self.store.consume(key, self.config, now_ms)
        except StoreUnavailableError as exc:
            log_event(
                "warning",
                "ratelimit.store_failed",
                limiter=self.config.name,
                error_code=exc.code,
                extra={"store": self.store.name, "fallback": self.fallback.name, "error": str(exc)},
            )
            allowed, consumed, reset_ms = await self.fallback.consume(key, self.config, now_ms)

        remaining = 0 if consumed < 0 else max(0, self.config.points - consumed)
        if allowed:
            return RateLimitDecision(
                allowed=True,
                limit=self.config.points,
                remaining=remaining,
                retry_after=0,
                reset_after_ms=reset_ms,
            )

        ratelimit_block_total.inc(labels={"limiter": self.config.name})
        return RateLimitDecision(
            allowed=False,
            limit=self.config.points,
            remaining=remaining,
            retry_after=max(1, math.ceil(reset_ms / 1000)),
            reset_after_ms=reset_ms,
        )


class RateLimiterRegistry:
    """All named limiters sharing one store. Built once at startup."""

    def __init__(
        self,
        store: RateLimitStore,
        *,
        configs: Optional[Mapping[str, LimiterConfig]] = None,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
    ):
        self.store = store
        self.fallback = InMemoryRateLimitStore()
        self._limiters = {
            name: RateLimiter(config, store, clock=clock, enabled=enabled, fallback=self.fallback)
            for name, config in (configs or LIMITER_CONFIGS).items()
        }

    def get(self, name: str) -> RateLimiter:
        limiter = self._limiters.get(name)
        if limiter is None:
            raise ConfigurationError(f"Unknown rate limiter: {name!r}")
        return limiter

    async def consume(self, name: str, client_key: str) -> RateLimitDecision:
        return await self.get(name).consume(client_key)


def build_rate_limit_store(redis_client: Optional[aioredis.Redis], *, timeout: float = 0.5) -> RateLimitStore:
    if redis_client is not None:
        return RedisRateLimitStore(redis_client, timeout=timeout)
    log_event("warning", "Using in-memory rate limiter (not recommended for production)")
    return InMemoryRateLimitStore()
