"""FastAPI dependency injection for settings, sessions, tenant scopes and services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Path, Request
from groupbuy_core.config import CoreSettings, load_core_settings
from groupbuy_core.idempotency.ledger import IdempotencyLedger
from groupbuy_core.notifications.queue import NotificationQueue
from groupbuy_core.orders.actions import OrderActions
from groupbuy_core.orders.intake import OrderIntakeEngine
from groupbuy_core.state.database import get_engine, make_session_factory
from groupbuy_core.tenancy import ScopeToken, TenantContextResolver
from groupbuy_core.webhooks.router import WebhookEventRouter
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_core_settings_cache: CoreSettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_core_settings() -> CoreSettings:
    """Return the cached :class:`CoreSettings` singleton."""
    global _core_settings_cache  # noqa: PLW0603
    if _core_settings_cache is None:
        _core_settings_cache = load_core_settings()
    return _core_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
CoreSettingsDep = Annotated[CoreSettings, Depends(get_core_settings)]

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: CoreSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Core services open their own units of work from it, so most routes
    depend on the factory rather than on a request-bound session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a platform-level ``AsyncSession`` with no tenant context.

    Only tenant resolution and health probes use it.  Tenant-owned rows
    are reached through :class:`~groupbuy_core.state.gateway.TenantDataGateway`.
    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
PlatformSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Tenant scope
# ---------------------------------------------------------------------------

_resolver = TenantContextResolver()


async def get_public_scope(
    session: PlatformSessionDep,
    tenant_slug: Annotated[str, Path(min_length=1, max_length=64)],
) -> ScopeToken:
    """Resolve the scope named by the ``{tenant_slug}`` path segment."""
    return await _resolver.resolve(session, tenant_slug)


async def get_host_scope(request: Request, session: PlatformSessionDep) -> ScopeToken:
    """Resolve the scope of the authenticated host.

    The tenant comes only from the verified session token, never from the
    path or body.
    """
    tenant_id: str | None = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return await _resolver.scope_for_id(session, tenant_id)


PublicScopeDep = Annotated[ScopeToken, Depends(get_public_scope)]
HostScopeDep = Annotated[ScopeToken, Depends(get_host_scope)]

# ---------------------------------------------------------------------------
# Core services
# ---------------------------------------------------------------------------


def get_intake_engine(session_factory: SessionFactoryDep, settings: CoreSettingsDep) -> OrderIntakeEngine:
    return OrderIntakeEngine(session_factory, settings)


def get_order_actions(session_factory: SessionFactoryDep) -> OrderActions:
    return OrderActions(session_factory)


def get_webhook_router(session_factory: SessionFactoryDep, settings: CoreSettingsDep) -> WebhookEventRouter:
    return WebhookEventRouter(session_factory, settings)


def get_notification_queue(session_factory: SessionFactoryDep, settings: CoreSettingsDep) -> NotificationQueue:
    return NotificationQueue(session_factory, settings)


def get_ledger(session_factory: SessionFactoryDep, settings: CoreSettingsDep) -> IdempotencyLedger:
    return IdempotencyLedger(session_factory, settings)


IntakeDep = Annotated[OrderIntakeEngine, Depends(get_intake_engine)]
OrderActionsDep = Annotated[OrderActions, Depends(get_order_actions)]
WebhookRouterDep = Annotated[WebhookEventRouter, Depends(get_webhook_router)]
NotificationQueueDep = Annotated[NotificationQueue, Depends(get_notification_queue)]
LedgerDep = Annotated[IdempotencyLedger, Depends(get_ledger)]
