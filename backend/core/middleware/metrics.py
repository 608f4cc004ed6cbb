import logging
import time
from starlette.middleware.base import BaseHTTPMiddleware

from backend.core.logging import LOGGER_NAME
from backend.core.metrics import http_requests_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record HTTP request metrics (Prometheus-style)."""

    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        _record_request_metric(request, response, duration_ms)
        return response


def _record_request_metric(request, response, duration_ms: float) -> None:
    try:
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "path": normalize_path(request.url.path),
            "status": str(getattr(response, "status_code", None) or 0),
        })
    except Exception:
        # Metrics must never fail the request
        logging.getLogger(LOGGER_NAME).debug("metrics.record_failed", exc_info=True)
