"""FastAPI application entry-point for the group-buy platform API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from groupbuy_core.config import CoreSettings
from groupbuy_core.notifications.dispatcher import NotificationDispatcher
from groupbuy_core.notifications.provider import LineMessagingClient
from groupbuy_core.state.sqlite_adapter import create_local_tables

from api import __version__
from api.config import APISettings, PlatformEnv
from api.dependencies import (
    dispose_engine,
    get_core_settings,
    get_session_factory,
    get_settings,
    init_engine,
)
from api.errors import REQUEST_ID_HEADER, install_error_handlers
from api.middleware.auth import HostAuthenticationMiddleware
from api.middleware.json_formatter import JSONFormatter
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware, record_dispatch_report
from api.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter
from api.routers import health, host_orders, line_webhooks, operations, public_orders
from api.routers import metrics as metrics_router

logger = logging.getLogger(__name__)


def _configure_structured_logging() -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    handler.addFilter(TraceLoggingFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production runs Alembic).
    - Start the in-process notification dispatcher when enabled.

    On shutdown the dispatcher drains its in-flight deliveries before the
    engine pool is disposed.
    """
    settings: APISettings = app.state.settings
    core_settings: CoreSettings = app.state.core_settings

    if settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(core_settings)
    is_local = core_settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        await create_local_tables(engine)

    dispatcher: NotificationDispatcher | None = None
    provider: LineMessagingClient | None = None
    if settings.dispatcher_enabled:
        provider = LineMessagingClient(base_url=settings.line_api_base_url, timeout=settings.line_api_timeout)
        dispatcher = NotificationDispatcher(
            get_session_factory(),
            provider,
            core_settings,
            on_report=record_dispatch_report,
        )
        dispatcher.start()
        logger.info("Notification dispatcher started (worker=%s)", dispatcher.worker_id)

    yield

    if dispatcher is not None:
        await dispatcher.stop()
    if provider is not None:
        await provider.close()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None, core_settings: CoreSettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application.

    Explicit settings override the environment-derived singletons for
    every dependency that reads them.
    """
    settings = settings or get_settings()
    core_settings = core_settings or get_core_settings()

    app = FastAPI(
        title="Group-buy Platform API",
        description="Order intake, host actions and LINE webhooks for group-buy storefronts.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.core_settings = core_settings
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_core_settings] = lambda: core_settings

    # -- Middleware (added innermost first; the last one added runs first) ----

    app.add_middleware(
        RateLimitMiddleware,
        config=RateLimitConfig(
            enabled=settings.rate_limit_enabled,
            default_requests_per_minute=settings.rate_limit_default_per_minute,
            burst_multiplier=settings.rate_limit_burst_multiplier,
            route_limits=settings.rate_limit_routes,
        ),
    )
    app.add_middleware(HostAuthenticationMiddleware, secret=settings.session_secret.get_secret_value())
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Idempotency-Key", REQUEST_ID_HEADER, "Accept"],
        expose_headers=[REQUEST_ID_HEADER, "Retry-After", "X-Trace-ID"],
    )
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(TraceContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api")
    app.include_router(public_orders.router, prefix="/api")
    app.include_router(line_webhooks.router, prefix="/api")
    app.include_router(host_orders.router, prefix="/api")
    app.include_router(operations.router, prefix="/api")

    # Scrape and probe endpoints live at the root.
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    install_error_handlers(app)
    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
