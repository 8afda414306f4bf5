"""Shared fixtures for the API tests.

The application runs against a real SQLite file under ``tmp_path``; the
engine is initialised through :func:`api.dependencies.init_engine` exactly
as the lifespan does, and two tenants are provisioned with one product
each.  Host requests carry tokens minted with the test session secret.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

import pytest
import pytest_asyncio
from api.config import APISettings
from api.dependencies import dispose_engine, get_session_factory, init_engine
from api.main import create_app
from api.middleware.auth import sign_session_token
from groupbuy_core.config import CoreSettings
from groupbuy_core.state.gateway import TenantDataGateway
from groupbuy_core.state.provisioning import add_product, create_tenant
from groupbuy_core.state.sqlite_adapter import create_local_tables
from groupbuy_core.tenancy import ScopeToken
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

TEST_SESSION_SECRET = "test-session-secret-for-groupbuy"


@dataclass(frozen=True)
class Tenant:
    scope: ScopeToken
    product_id: str


@pytest.fixture
def api_settings() -> APISettings:
    return APISettings(
        _env_file=None,
        session_secret=SecretStr(TEST_SESSION_SECRET),
        rate_limit_enabled=False,
    )


@pytest.fixture
def core_settings(tmp_path) -> CoreSettings:
    return CoreSettings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        dispatcher_jitter=False,
        channel_credentials={
            "acme": {"channel_secret": "acme-secret", "channel_access_token": "acme-token"},
            "globex": {"channel_secret": "globex-secret", "channel_access_token": "globex-token"},
        },
    )


@pytest_asyncio.fixture
async def session_factory(core_settings):
    engine = init_engine(core_settings)
    await create_local_tables(engine)
    yield get_session_factory()
    await dispose_engine()


async def _provision(session_factory, slug: str) -> Tenant:
    scope = await create_tenant(session_factory, slug=slug, name=slug.title(), host_messaging_id=f"U-host-{slug}")
    product = await add_product(TenantDataGateway(session_factory, scope), name="Mochi Box", price=250)
    return Tenant(scope=scope, product_id=product.id)


@pytest_asyncio.fixture
async def acme(session_factory) -> Tenant:
    return await _provision(session_factory, "acme")


@pytest_asyncio.fixture
async def globex(session_factory) -> Tenant:
    return await _provision(session_factory, "globex")


@pytest_asyncio.fixture
async def client(api_settings, core_settings, session_factory):
    app = create_app(api_settings, core_settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def host_headers():
    """Return ``Authorization`` headers for a host of *tenant*."""

    def _headers(tenant: Tenant, role: str = "owner", *, expires_in: int = 3600) -> dict[str, str]:
        token = sign_session_token(
            {
                "sub": f"host@{tenant.scope.tenant_slug}",
                "tenant_id": tenant.scope.tenant_id,
                "role": role,
                "exp": int(time.time()) + expires_in,
            },
            TEST_SESSION_SECRET,
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def order_body():
    """Return an order submission body for *tenant*."""

    def _body(tenant: Tenant, quantity: int = 2, reference: str = "cust-1") -> dict:
        return {
            "customer": {"reference": reference, "display_name": "Kei"},
            "items": [{"product_id": tenant.product_id, "quantity": quantity}],
        }

    return _body
