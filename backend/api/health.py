"""
Liveness and readiness endpoints.

/readyz pings the shared stores selected at startup; it never exposes
connection strings or error details.
"""

import asyncio
import logging
import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from backend.core.database import check_connection
from backend.core.logging import LOGGER_NAME, get_request_id, latency_bucket_ms
from backend.core.redis import ping_redis
from backend.core.services import AppServices, get_services

logger = logging.getLogger(LOGGER_NAME)

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
async def readyz(services: AppServices = Depends(get_services)):
    """Readiness: the quota store, plus Redis and the database when configured, answer a ping."""
    start = time.perf_counter()
    checks = {"quota_store": await services.quota_store.ping()}
    if services.redis is not None:
        checks["redis"] = await ping_redis(services.redis)
    if services.engine is not None:
        checks["database"] = await asyncio.to_thread(check_connection, services.engine)
    latency_bucket = latency_bucket_ms((time.perf_counter() - start) * 1000)

    ok = all(checks.values())
    logger.info(
        "health.ready",
        extra={"request_id": get_request_id(), "ok": ok, "latency_bucket": latency_bucket},
    )
    if not ok:
        failed = ", ".join(name for name, passed in checks.items() if not passed)
        logger.warning(f"[readyz] unavailable: {failed}")
        return JSONResponse(
            status_code=503,
            content={"status": "error", "detail": f"unavailable: {failed}", "checks": checks},
        )
    return {"status": "ok", "store": services.quota_store.name, "checks": checks}
