import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from backend/.env
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

from backend.api import admin, analyze, auth, health, metrics, usage
from backend.core.config import Settings, settings, validate_config
from backend.core.database import create_all_tables, dispose_engine, get_database_url, init_engine
from backend.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from backend.core.logging import LOGGER_NAME, configure_logging
from backend.core.middleware.metrics import MetricsMiddleware
from backend.core.middleware.request_id import RequestIdMiddleware
from backend.core.redis import close_redis_client, create_redis_client
from backend.core.services import AppServices, build_services
from backend.core.validation import validate_env


def create_app(services: Optional[AppServices] = None, settings_obj: Optional[Settings] = None) -> FastAPI:
    """
    Build the API application.

    When `services` is given (tests), startup uses it as-is; otherwise the
    lifespan selects the quota and limiter backends from settings once.
    """
    cfg = settings_obj or (services.settings if services else settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger(LOGGER_NAME)
        logger.info("Starting VibeCoding backend...")
        app.state.startup_time = time.time()

        owned = services is None
        if owned:
            redis_client = create_redis_client(cfg.REDIS_URL, timeout=cfg.STORE_TIMEOUT_SECONDS)
            database_url = get_database_url()
            engine = init_engine(database_url) if database_url else None
            if engine is not None:
                create_all_tables(engine)
            app.state.services = build_services(cfg, redis_client=redis_client, engine=engine)
        try:
            yield
        finally:
            if owned:
                running = app.state.services
                if running.auth_client is not None:
                    await running.auth_client.aclose()
                await close_redis_client(running.redis)
                dispose_engine()
            logger.info("Stopping VibeCoding backend...")

    app = FastAPI(title="VibeCoding - Backend", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    # Middlewares (last added runs first)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "x-request-id",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
    )

    app.include_router(health.root_router)
    app.include_router(metrics.router)
    app.include_router(auth.router)
    app.include_router(analyze.router)
    app.include_router(usage.router)
    app.include_router(admin.router)
    return app


configure_logging(settings.ENV)
validate_env()
validate_config(strict=settings.CONFIG_STRICT)

app = create_app()
