"""Tenant context resolution.

A :class:`ScopeToken` is the only way tenant identity enters the data
gateway.  Tokens are minted here, per request, from a public slug or from
an authenticated tenant id; they are never persisted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy_core.errors import TenantNotFound
from groupbuy_core.state.tables import TenantTable

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?$")


@dataclass(frozen=True, slots=True)
class ScopeToken:
    """Carries exactly one tenant identity through the data-access layer."""

    tenant_id: str
    tenant_slug: str

    def __repr__(self) -> str:
        return f"ScopeToken(tenant={self.tenant_slug})"


def is_valid_slug(slug: str) -> bool:
    return bool(_SLUG_RE.match(slug))


class TenantContextResolver:
    """Map request-level tenant identifiers onto :class:`ScopeToken` values.

    Lookups read only the platform-level ``tenants`` table, which carries no
    tenant-owned data, so they do not need a scope themselves.
    """

    async def resolve(self, session: AsyncSession, tenant_slug: str) -> ScopeToken:
        """Return a scope for the tenant with public *tenant_slug*.

        Raises
        ------
        TenantNotFound
            If the slug is malformed or no tenant owns it.
        """
        if not is_valid_slug(tenant_slug):
            raise TenantNotFound(f"Unknown tenant '{tenant_slug}'")
        result = await session.execute(select(TenantTable.id, TenantTable.slug).where(TenantTable.slug == tenant_slug))
        row = result.first()
        if row is None:
            raise TenantNotFound(f"Unknown tenant '{tenant_slug}'")
        return ScopeToken(tenant_id=row.id, tenant_slug=row.slug)

    async def scope_for_id(self, session: AsyncSession, tenant_id: str) -> ScopeToken:
        """Return a scope for an already-authenticated *tenant_id*."""
        result = await session.execute(select(TenantTable.id, TenantTable.slug).where(TenantTable.id == tenant_id))
        row = result.first()
        if row is None:
            raise TenantNotFound(f"Unknown tenant id '{tenant_id}'")
        return ScopeToken(tenant_id=row.id, tenant_slug=row.slug)

    async def all_scopes(self, session: AsyncSession) -> list[ScopeToken]:
        """Return one scope per provisioned tenant, for maintenance jobs."""
        result = await session.execute(select(TenantTable.id, TenantTable.slug).order_by(TenantTable.slug))
        return [ScopeToken(tenant_id=r.id, tenant_slug=r.slug) for r in result.all()]
