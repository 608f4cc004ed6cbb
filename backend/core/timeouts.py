"""Bounded waits for shared-store operations."""

import asyncio
from typing import Awaitable, TypeVar

from backend.core.errors import StoreTimeoutError
from backend.core.metrics import store_errors_total

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], *, timeout: float, store: str, operation: str) -> T:
    """Await a store call, converting an overrun into StoreTimeoutError.

    A timed-out call may still complete on the store side; callers treat
    the outcome as unknown.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        store_errors_total.inc(labels={"store": store, "operation": operation})
        raise StoreTimeoutError(f"{store}.{operation} timed out after {timeout}s") from exc
