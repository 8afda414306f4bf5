"""Platform provisioning: tenants and catalog seeding.

Tenant creation is the one write that happens outside any scope, since the
tenant is what a scope refers to.  Catalog rows are tenant-owned and go
through the gateway like everything else.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groupbuy_core.errors import ValidationFailed
from groupbuy_core.state.gateway import TenantDataGateway
from groupbuy_core.state.tables import ProductTable, ProductVariantTable, TenantTable
from groupbuy_core.tenancy import ScopeToken, is_valid_slug

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VariantSpec:
    name: str
    price: int | None = None


async def create_tenant(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    slug: str,
    name: str,
    host_messaging_id: str | None = None,
) -> ScopeToken:
    """Provision a tenant and return its scope.

    Raises
    ------
    ValidationFailed
        If the slug is malformed or already taken.
    """
    if not is_valid_slug(slug):
        raise ValidationFailed.single("slug", "Slug must be lowercase letters, digits and hyphens")

    async with session_factory() as session:
        try:
            async with session.begin():
                tenant = TenantTable(slug=slug, name=name, host_messaging_id=host_messaging_id)
                session.add(tenant)
                await session.flush()
                tenant_id = tenant.id
        except IntegrityError as exc:
            raise ValidationFailed.single("slug", f"Slug '{slug}' is already taken") from exc

    logger.info("Provisioned tenant slug=%s id=%s", slug, tenant_id)
    return ScopeToken(tenant_id=tenant_id, tenant_slug=slug)


async def list_tenants(session_factory: async_sessionmaker[AsyncSession]) -> list[TenantTable]:
    async with session_factory() as session:
        result = await session.execute(select(TenantTable).order_by(TenantTable.slug))
        return list(result.scalars().all())


async def add_product(
    gateway: TenantDataGateway,
    *,
    name: str,
    price: int,
    variants: list[VariantSpec] | None = None,
    orderable_until: datetime | None = None,
    active: bool = True,
) -> ProductTable:
    """Seed one product (and optional variants) into the gateway's tenant."""
    if price < 0:
        raise ValidationFailed.single("price", "Price must not be negative")
    for variant in variants or []:
        if variant.price is not None and variant.price < 0:
            raise ValidationFailed.single("variants", f"Variant '{variant.name}' has a negative price")

    async with gateway.unit() as unit:
        product = await unit.add(
            ProductTable(name=name, price=price, active=active, orderable_until=orderable_until)
        )
        for variant in variants or []:
            await unit.add(ProductVariantTable(product_id=product.id, name=variant.name, price=variant.price))

    logger.info(
        "Added product tenant=%s product_id=%s variants=%d",
        gateway.scope.tenant_slug,
        product.id,
        len(variants or []),
    )
    return product
