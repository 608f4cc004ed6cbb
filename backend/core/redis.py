"""
Redis client configuration.

Shared by the rate limiter (multi-process limiter state) and, when
selected, the quota store. When REDIS_URL is unset, callers fall back to
in-process backends.
"""

import logging
from typing import Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from backend.core.logging import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)


def create_redis_client(url: Optional[str], *, timeout: float = 0.5) -> Optional[aioredis.Redis]:
    """Build an asyncio Redis client, or None when no URL is configured.

    Socket timeouts match the store timeout so a slow Redis fails fast
    instead of holding request handlers.
    """
    if not url:
        return None

    client = aioredis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
        health_check_interval=30,
    )
    logger.info("Redis client configured")
    return client


async def ping_redis(client: Optional[aioredis.Redis]) -> bool:
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except (RedisError, OSError) as exc:
        logger.warning(f"Redis ping failed: {exc}")
        return False


async def close_redis_client(client: Optional[aioredis.Redis]) -> None:
    if client is None:
        return
    try:
        await client.aclose()
        logger.info("Redis disconnected")
    except (RedisError, OSError) as exc:
        logger.warning(f"Redis close failed: {exc}")
