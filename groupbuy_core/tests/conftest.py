"""Shared fixtures for the core test suite.

Every test gets its own SQLite file under ``tmp_path`` (``:memory:`` is
per-connection, and the concurrency tests need several connections on the
same database) and two provisioned tenants with a small catalog.
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest
import pytest_asyncio
from groupbuy_core.config import CoreSettings
from groupbuy_core.models.order import CustomerInput, LineItemInput, OrderSubmission
from groupbuy_core.state.database import make_session_factory
from groupbuy_core.state.gateway import TenantDataGateway
from groupbuy_core.state.provisioning import VariantSpec, add_product, create_tenant
from groupbuy_core.state.sqlite_adapter import create_local_tables, get_local_engine
from groupbuy_core.state.tables import ProductVariantTable
from groupbuy_core.tenancy import ScopeToken


@dataclass(frozen=True)
class Shop:
    """A provisioned tenant and the ids of its catalog rows."""

    scope: ScopeToken
    product_id: str
    variant_id: str
    variant_price: int
    price: int


@pytest.fixture
def settings() -> CoreSettings:
    return CoreSettings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///unused.db",
        dispatcher_jitter=False,
        dispatcher_base_delay_seconds=0.0001,
        dispatcher_max_delay_seconds=0.001,
        dispatcher_poll_interval_seconds=0.01,
        channel_credentials={
            "acme": {"channel_secret": "acme-secret", "channel_access_token": "acme-token"},
            "globex": {"channel_secret": "globex-secret", "channel_access_token": "globex-token"},
        },
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield make_session_factory(engine)
    await engine.dispose()


async def _open_shop(session_factory, slug: str, host_id: str) -> Shop:
    scope = await create_tenant(session_factory, slug=slug, name=slug.title(), host_messaging_id=host_id)
    gateway = TenantDataGateway(session_factory, scope)
    product = await add_product(
        gateway,
        name="Mochi Box",
        price=250,
        variants=[VariantSpec(name="Matcha", price=300)],
    )
    variant_id = await _first_variant(session_factory, scope, product.id)
    return Shop(scope=scope, product_id=product.id, variant_id=variant_id, variant_price=300, price=250)


async def _first_variant(session_factory, scope: ScopeToken, product_id: str) -> str:
    async with TenantDataGateway(session_factory, scope).unit() as unit:
        variant = await unit.find_one(ProductVariantTable, ProductVariantTable.product_id == product_id)
    assert variant is not None
    return variant.id


@pytest_asyncio.fixture
async def acme(session_factory) -> Shop:
    return await _open_shop(session_factory, "acme", "U-host-acme")


@pytest_asyncio.fixture
async def globex(session_factory) -> Shop:
    return await _open_shop(session_factory, "globex", "U-host-globex")


def make_submission(shop: Shop, *, quantity: int = 2, reference: str = "cust-1", **extra) -> OrderSubmission:
    return OrderSubmission(
        customer=CustomerInput(reference=reference, display_name="Kei"),
        items=[LineItemInput(product_id=shop.product_id, quantity=quantity)],
        **extra,
    )


@pytest.fixture
def submission_for():
    """Build an order body for a shop; tests call it with overrides."""
    return make_submission
