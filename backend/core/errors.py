"""Error taxonomy and the JSON error envelope handlers."""

import logging
import builtins
from typing import Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from backend.core.logging import LOGGER_NAME, get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.headers = dict(headers or {})


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class FeatureNotEnabledError(AppError):
    """The user's plan does not include the requested feature."""
    code = "feature_not_enabled"
    status_code = 403


class PayloadTooLargeError(AppError):
    code = "payload_too_large"
    status_code = 413


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class LimitExceededError(AppError):
    """A plan quota (daily analyses, monthly API calls) is exhausted."""
    code = "limit_exceeded"
    status_code = 429


class ConfigurationError(AppError):
    """Unknown plan or missing policy. Never reachable from user input."""
    code = "configuration_error"
    status_code = 500


class UpstreamServiceError(AppError):
    code = "upstream_error"
    status_code = 502


class StoreUnavailableError(AppError):
    code = "store_unavailable"
    status_code = 503


class StoreTimeoutError(StoreUnavailableError):
    code = "store_timeout"


# Public messages for server-side failures; internal details stay in the logs.
_PUBLIC_MESSAGES = {
    ConfigurationError.code: "Plan configuration not found",
    StoreUnavailableError.code: "Service temporarily unavailable. Please try again shortly.",
    StoreTimeoutError.code: "Service temporarily unavailable. Please try again shortly.",
}


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "success": False,
        "error": message,
        "code": code,
        "request_id": request_id,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    public_message = _PUBLIC_MESSAGES.get(exc.code, exc.message)
    payload = error_payload(exc.code, public_message, rid)
    logger = logging.getLogger(LOGGER_NAME)
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers or None)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    payload = error_payload(code, message, rid)
    logger = logging.getLogger(LOGGER_NAME)
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    logging.getLogger(LOGGER_NAME).warning(
        "request.invalid",
        extra={"request_id": rid, "error_code": ValidationError.code, "status": 400},
    )
    response = JSONResponse(status_code=400, content=error_payload(ValidationError.code, message, rid))
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger(LOGGER_NAME)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    payload = error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
