"""Tests for the tenant-scoped data gateway and tenant provisioning."""

from __future__ import annotations

import logging

import pytest
from groupbuy_core.errors import (
    CrossTenantAccessDenied,
    EntityNotFound,
    ScopeRequired,
    TenantNotFound,
    ValidationFailed,
)
from groupbuy_core.state.gateway import TenantDataGateway
from groupbuy_core.state.provisioning import create_tenant, list_tenants
from groupbuy_core.state.tables import CustomerTable, ProductTable, ProductVariantTable
from groupbuy_core.tenancy import ScopeToken, TenantContextResolver

# ---------------------------------------------------------------------------
# Scope enforcement
# ---------------------------------------------------------------------------


class TestScopeRequired:
    def test_rejects_missing_scope(self, session_factory):
        with pytest.raises(ScopeRequired):
            TenantDataGateway(session_factory, None)  # type: ignore[arg-type]

    def test_rejects_raw_tenant_id(self, session_factory):
        with pytest.raises(ScopeRequired):
            TenantDataGateway(session_factory, "tenant-a")  # type: ignore[arg-type]


class TestReadIsolation:
    @pytest.mark.asyncio
    async def test_own_rows_are_visible(self, session_factory, acme):
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            product = await unit.get(ProductTable, acme.product_id)
        assert product.price == 250
        assert product.tenant_id == acme.scope.tenant_id

    @pytest.mark.asyncio
    async def test_foreign_row_raises_cross_tenant(self, session_factory, acme, globex, caplog):
        caplog.set_level(logging.WARNING, logger="groupbuy.security")
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            with pytest.raises(CrossTenantAccessDenied):
                await unit.get(ProductTable, globex.product_id)
        assert any("Cross-tenant access denied" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_missing_row_raises_not_found(self, session_factory, acme):
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            with pytest.raises(EntityNotFound):
                await unit.get(ProductTable, "does-not-exist")

    @pytest.mark.asyncio
    async def test_find_never_returns_foreign_rows(self, session_factory, acme, globex):
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            products = await unit.find(ProductTable)
            total = await unit.count(ProductTable)
        assert [p.id for p in products] == [acme.product_id]
        assert total == 1

    @pytest.mark.asyncio
    async def test_platform_table_is_not_scoped(self, session_factory, acme):
        from groupbuy_core.state.tables import TenantTable

        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            with pytest.raises(TypeError):
                await unit.find(TenantTable)


class TestWriteIsolation:
    @pytest.mark.asyncio
    async def test_tenant_id_is_filled_from_scope(self, session_factory, acme):
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            customer = await unit.add(CustomerTable(reference="c-9", display_name="Aoi"))
        assert customer.tenant_id == acme.scope.tenant_id

    @pytest.mark.asyncio
    async def test_write_for_other_tenant_is_denied(self, session_factory, acme, globex):
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            with pytest.raises(CrossTenantAccessDenied):
                await unit.add(CustomerTable(tenant_id=globex.scope.tenant_id, reference="x"))

    @pytest.mark.asyncio
    async def test_foreign_reference_is_denied(self, session_factory, acme, globex):
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            with pytest.raises(CrossTenantAccessDenied):
                await unit.add(ProductVariantTable(product_id=globex.product_id, name="Sneaky"))

    @pytest.mark.asyncio
    async def test_failed_unit_rolls_back(self, session_factory, acme):
        gateway = TenantDataGateway(session_factory, acme.scope)
        with pytest.raises(EntityNotFound):
            async with gateway.unit() as unit:
                await unit.add(CustomerTable(reference="rolled-back"))
                await unit.get(ProductTable, "missing")

        async with gateway.unit() as unit:
            assert await unit.find_one(CustomerTable, CustomerTable.reference == "rolled-back") is None

    @pytest.mark.asyncio
    async def test_update_where_cannot_touch_foreign_rows(self, session_factory, acme, globex):
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            changed = await unit.update_where(
                ProductTable, ProductTable.id == globex.product_id, values={"price": 1}
            )
        assert changed == 0
        async with TenantDataGateway(session_factory, globex.scope).unit() as unit:
            assert (await unit.get(ProductTable, globex.product_id)).price == 250

    @pytest.mark.asyncio
    async def test_insert_if_absent_requires_tenant_in_key(self, session_factory, acme):
        from groupbuy_core.state.tables import WebhookEventRecordTable

        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            with pytest.raises(TypeError):
                await unit.insert_if_absent(
                    WebhookEventRecordTable,
                    {"event_id": "e1", "event_type": "x", "status": "processing"},
                    index_elements=["event_id"],
                )


# ---------------------------------------------------------------------------
# Provisioning and resolution
# ---------------------------------------------------------------------------


class TestProvisioning:
    @pytest.mark.asyncio
    async def test_duplicate_slug_is_rejected(self, session_factory, acme):
        with pytest.raises(ValidationFailed):
            await create_tenant(session_factory, slug="acme", name="Another Acme")

    @pytest.mark.asyncio
    async def test_malformed_slug_is_rejected(self, session_factory):
        with pytest.raises(ValidationFailed):
            await create_tenant(session_factory, slug="Not A Slug", name="x")

    @pytest.mark.asyncio
    async def test_list_tenants_is_sorted(self, session_factory, acme, globex):
        tenants = await list_tenants(session_factory)
        assert [t.slug for t in tenants] == ["acme", "globex"]

    @pytest.mark.asyncio
    async def test_resolver_maps_slug_to_scope(self, session_factory, acme):
        resolver = TenantContextResolver()
        async with session_factory() as session:
            scope = await resolver.resolve(session, "acme")
        assert scope == ScopeToken(tenant_id=acme.scope.tenant_id, tenant_slug="acme")

    @pytest.mark.asyncio
    async def test_resolver_unknown_slug(self, session_factory):
        resolver = TenantContextResolver()
        async with session_factory() as session:
            with pytest.raises(TenantNotFound):
                await resolver.resolve(session, "nobody")
