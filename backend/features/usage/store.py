"""
backend/features/usage/store.py

Quota store backends.

Every backend exposes the same two operations:
- get_count: snapshot read, 0 when the counter does not exist yet
- increment_and_get: atomic increment performed by the store itself

Counters are never read-modify-written in application code. Backends are
chosen once at startup by build_quota_store().
"""

import asyncio
import logging
import threading
from typing import Dict, Optional, Protocol, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.core.database import usage_counters
from backend.core.errors import ConfigurationError, StoreUnavailableError
from backend.core.logging import LOGGER_NAME
from backend.core.metrics import store_errors_total
from backend.core.timeouts import bounded
from backend.features.usage.periods import ttl_for_period_key


logger = logging.getLogger(LOGGER_NAME)

DEFAULT_TIMEOUT = 0.5


class QuotaStore(Protocol):
    name: str

    async def get_count(self, user_id: str, period_key: str) -> int:
        ...

    async def increment_and_get(self, user_id: str, period_key: str) -> int:
        ...

    async def ping(self) -> bool:
        ...


def _unavailable(store: str, operation: str, exc: Exception) -> StoreUnavailableError:
    store_errors_total.inc(labels={"store": store, "operation": operation})
    return StoreUnavailableError(f"{store}.{operation} failed: {exc}")


class InMemoryQuotaStore:
    """Process-local counters. Single-process development and tests only."""

    name = "memory"

    def __init__(self):
        self._counts: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    async def get_count(self, user_id: str, period_key: str) -> int:
        with self._lock:
            return self._counts.get((user_id, period_key), 0)

    async def increment_and_get(self, user_id: str, period_key: str) -> int:
        with self._lock:
            key = (user_id, period_key)
            self._counts[key] = self._counts.get(key, 0) + 1
            return self._counts[key]

    async def ping(self) -> bool:
        return True


class RedisQuotaStore:
    """Counters as Redis integers: INCR + EXPIRE inside one MULTI/EXEC."""

    name = "redis"

    def __init__(self, client: aioredis.Redis, *, timeout: float = DEFAULT_TIMEOUT, key_prefix: str = "usage"):
        self._client = client
        self._timeout = timeout
        self._prefix = key_prefix

    def _key(self, user_id: str, period_key: str) -> str:
        return f"{self._prefix}:{user_id}:{period_key}"

    async def get_count(self, user_id: str, period_key: str) -> int:
        try:
            value = await bounded(
                self._client.get(self._key(user_id, period_key)),
                timeout=self._timeout,
                store=self.name,
                operation="get_count",
            )
        except (RedisError, OSError) as exc:
            raise _unavailable(self.name, "get_count", exc) from exc
        return int(value) if value else 0

    async def increment_and_get(self, user_id: str, period_key: str) -> int:
        key = self._key(user_id, period_key)
        try:
            results = await bounded(
                self._incr_with_ttl(key, ttl_for_period_key(period_key)),
                timeout=self._timeout,
                store=self.name,
                operation="increment",
            )
        except (RedisError, OSError) as exc:
            raise _unavailable(self.name, "increment", exc) from exc
        return int(results[0])

    async def _incr_with_ttl(self, key: str, ttl: int):
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl)
            return await pipe.execute()

    async def ping(self) -> bool:
        try:
            return bool(await bounded(self._client.ping(), timeout=self._timeout, store=self.name, operation="ping"))
        except (RedisError, OSError, StoreUnavailableError):
            return False


class SqlQuotaStore:
    """
    Counters in the usage_counters table.

    increment_and_get is a single INSERT ... ON CONFLICT DO UPDATE ...
    RETURNING statement, so the database serializes concurrent increments
    for the same (user_id, period_key). Supported dialects: PostgreSQL,
    SQLite.
    """

    name = "sql"

    _INSERTS = {
        "postgresql": postgresql.insert,
        "sqlite": sqlite.insert,
    }

    def __init__(self, engine: Engine, *, timeout: float = DEFAULT_TIMEOUT):
        insert_fn = self._INSERTS.get(engine.dialect.name)
        if insert_fn is None:
            raise ConfigurationError(f"SQL quota store does not support dialect {engine.dialect.name!r}")
        self._engine = engine
        self._insert = insert_fn
        self._timeout = timeout

    def _select_count(self, user_id: str, period_key: str) -> int:
        with self._engine.connect() as conn:
            value = conn.execute(
                select(usage_counters.c.count)
                .where(usage_counters.c.user_id == user_id)
                .where(usage_counters.c.period_key == period_key)
            ).scalar_one_or_none()
        return int(value or 0)

    def _upsert_increment(self, user_id: str, period_key: str) -> int:
        stmt = self._insert(usage_counters).values(
            user_id=user_id,
            period_key=period_key,
            count=1,
            updated_at=func.now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[usage_counters.c.user_id, usage_counters.c.period_key],
            set_={"count": usage_counters.c.count + 1, "updated_at": func.now()},
        ).returning(usage_counters.c.count)
        with self._engine.begin() as conn:
            return int(conn.execute(stmt).scalar_one())

    async def get_count(self, user_id: str, period_key: str) -> int:
        try:
            return await bounded(
                asyncio.to_thread(self._select_count, user_id, period_key),
                timeout=self._timeout,
                store=self.name,
                operation="get_count",
            )
        except SQLAlchemyError as exc:
            raise _unavailable(self.name, "get_count", exc) from exc

    async def increment_and_get(self, user_id: str, period_key: str) -> int:
        try:
            return await bounded(
                asyncio.to_thread(self._upsert_increment, user_id, period_key),
                timeout=self._timeout,
                store=self.name,
                operation="increment",
            )
        except SQLAlchemyError as exc:
            raise _unavailable(self.name, "increment", exc) from exc

    def _ping_sync(self) -> bool:
        with self._engine.connect() as conn:
            conn.execute(select(1))
        return True

    async def ping(self) -> bool:
        try:
            return await bounded(asyncio.to_thread(self._ping_sync), timeout=self._timeout, store=self.name, operation="ping")
        except (SQLAlchemyError, StoreUnavailableError):
            return False


def build_quota_store(
    backend: str = "auto",
    *,
    redis_client: Optional[aioredis.Redis] = None,
    engine: Optional[Engine] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> QuotaStore:
    """
    Select the quota backend once at startup.

    auto: redis when a client is configured, else sql when an engine is
    configured, else in-memory (with a warning).
    """
    choice = (backend or "auto").lower()
    if choice == "auto":
        choice = "redis" if redis_client is not None else "sql" if engine is not None else "memory"

    if choice == "redis":
        if redis_client is None:
            raise ConfigurationError("Redis quota store selected but REDIS_URL is not set")
        logger.info("Quota store: redis")
        return RedisQuotaStore(redis_client, timeout=timeout)
    if choice == "sql":
        if engine is None:
            raise ConfigurationError("SQL quota store selected but DATABASE_URL is not set")
        logger.info(f"Quota store: sql ({engine.dialect.name})")
        return SqlQuotaStore(engine, timeout=timeout)
    if choice == "memory":
        logger.warning("Using in-memory quota store (counters are per-process and lost on restart)")
        return InMemoryQuotaStore()
    raise ConfigurationError(f"Unknown quota store backend: {backend!r}")
