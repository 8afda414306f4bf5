"""Tenant-scoped data gateway.

The single chokepoint for tenant-owned data.  A :class:`TenantDataGateway`
is bound to one :class:`ScopeToken`; every statement it issues carries the
``tenant_id = :scope`` predicate, added here rather than by callers, and
writes are checked against the scope before they reach the session.

Work happens inside :meth:`TenantDataGateway.unit`, one database
transaction: everything written in a unit becomes visible together or not
at all.  On PostgreSQL the unit also binds ``app.tenant_id`` so row-level
security backs up the predicate.

The gateway holds no business rules.  It answers "is this row yours" and
"did this conditional write land", and leaves the meaning to callers.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import ColumnElement, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groupbuy_core.errors import (
    CrossTenantAccessDenied,
    EntityNotFound,
    ScopeRequired,
    security_logger,
)
from groupbuy_core.state.database import dialect_name, set_tenant_context
from groupbuy_core.state.tables import (
    TENANT_OWNED_TABLES,
    Base,
    CustomerTable,
    NotificationEventTable,
    OrderItemTable,
    OrderTable,
    PaymentTable,
    ProductTable,
    ProductVariantTable,
    ShipmentTable,
    TenantTable,
)
from groupbuy_core.tenancy import ScopeToken

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Base)

# Foreign references that must resolve inside the writer's own tenant.
_REFERENCES: dict[type[Base], tuple[tuple[str, type[Base]], ...]] = {
    ProductVariantTable: (("product_id", ProductTable),),
    OrderTable: (("customer_id", CustomerTable),),
    OrderItemTable: (
        ("order_id", OrderTable),
        ("product_id", ProductTable),
        ("variant_id", ProductVariantTable),
    ),
    PaymentTable: (("order_id", OrderTable),),
    ShipmentTable: (("order_id", OrderTable),),
    NotificationEventTable: (("order_id", OrderTable),),
}


def _require_owned(model: type[Base]) -> None:
    if model not in TENANT_OWNED_TABLES:
        raise TypeError(f"{model.__name__} is not a tenant-owned table")


async def _insert_on_conflict_do_nothing(
    session: AsyncSession,
    model: type[Base],
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING``.

    Returns ``True`` when the row was inserted, ``False`` when a row with
    the same key already existed.
    """
    stmt: Any
    if "postgresql" in dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class ScopedUnit:
    """Tenant-scoped operations inside one open transaction.

    Instances are only handed out by :meth:`TenantDataGateway.unit`; the
    underlying session is deliberately not exposed.
    """

    def __init__(self, session: AsyncSession, scope: ScopeToken) -> None:
        self._session = session
        self._scope = scope

    @property
    def scope(self) -> ScopeToken:
        return self._scope

    def _predicate(self, model: type[Base]) -> ColumnElement[bool]:
        _require_owned(model)
        return model.tenant_id == self._scope.tenant_id  # type: ignore[attr-defined]

    # -- Reads ---------------------------------------------------------------

    async def tenant(self) -> TenantTable:
        """Return the scope's own tenant row."""
        row = await self._session.get(TenantTable, self._scope.tenant_id)
        if row is None:
            raise EntityNotFound(f"Tenant {self._scope.tenant_id} not found")
        return row

    async def get(self, model: type[T], entity_id: str, *, for_update: bool = False) -> T:
        """Load one entity by id.

        Raises
        ------
        CrossTenantAccessDenied
            If the id exists but belongs to a different tenant.  The foreign
            row is never materialised; only its owner column is compared.
        EntityNotFound
            If no row with that id exists.
        """
        stmt = (
            select(model)
            .where(model.id == entity_id, self._predicate(model))  # type: ignore[attr-defined]
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            await self._raise_missing(model, entity_id)
        return row  # type: ignore[return-value]

    async def _raise_missing(self, model: type[Base], entity_id: str) -> None:
        owner = (
            await self._session.execute(
                select(model.tenant_id).where(model.id == entity_id)  # type: ignore[attr-defined]
            )
        ).scalar_one_or_none()
        label = model.__tablename__
        if owner is not None and owner != self._scope.tenant_id:
            security_logger.warning(
                "Cross-tenant access denied: scope_tenant=%s table=%s entity_id=%s",
                self._scope.tenant_id,
                label,
                entity_id,
            )
            raise CrossTenantAccessDenied(f"Access to {label} '{entity_id}' is denied")
        raise EntityNotFound(f"{label} '{entity_id}' not found")

    async def find(
        self,
        model: type[T],
        *criteria: ColumnElement[bool],
        order_by: Sequence[Any] = (),
        limit: int | None = None,
        for_update: bool = False,
        skip_locked: bool = False,
    ) -> list[T]:
        """Return every row of *model* in scope matching *criteria*."""
        stmt = select(model).where(self._predicate(model), *criteria).execution_options(populate_existing=True)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        if for_update:
            stmt = stmt.with_for_update(skip_locked=skip_locked)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_one(self, model: type[T], *criteria: ColumnElement[bool]) -> T | None:
        rows = await self.find(model, *criteria, limit=1)
        return rows[0] if rows else None

    async def count(self, model: type[Base], *criteria: ColumnElement[bool]) -> int:
        stmt = select(func.count()).select_from(model).where(self._predicate(model), *criteria)
        return int((await self._session.execute(stmt)).scalar_one())

    # -- Writes --------------------------------------------------------------

    async def add(self, entity: T) -> T:
        """Stage *entity* for insert after checking tenant ownership.

        A missing ``tenant_id`` is filled from the scope; a different one is
        rejected.  Foreign references (order, customer, product, ...) must
        resolve inside the same tenant.
        """
        model = type(entity)
        _require_owned(model)
        current = getattr(entity, "tenant_id", None)
        if current is None:
            entity.tenant_id = self._scope.tenant_id  # type: ignore[attr-defined]
        elif current != self._scope.tenant_id:
            security_logger.warning(
                "Cross-tenant write denied: scope_tenant=%s table=%s entity_tenant=%s",
                self._scope.tenant_id,
                model.__tablename__,
                current,
            )
            raise CrossTenantAccessDenied(f"Cannot write {model.__tablename__} for another tenant")

        for attr, ref_model in _REFERENCES.get(model, ()):
            ref_id = getattr(entity, attr, None)
            if ref_id is not None:
                await self.get(ref_model, ref_id)

        self._session.add(entity)
        await self._session.flush()
        return entity

    async def add_all(self, entities: Iterable[Base]) -> None:
        for entity in entities:
            await self.add(entity)

    async def compare_and_swap(
        self,
        model: type[Base],
        entity_id: str,
        expected_version: int,
        values: dict[str, Any],
    ) -> bool:
        """Apply *values* only if the stored ``version`` equals *expected_version*.

        The version is bumped in the same statement.  Returns ``False`` when
        no row matched (wrong version, wrong tenant or missing id); callers
        decide what that means.
        """
        stmt = (
            update(model)
            .where(
                model.id == entity_id,  # type: ignore[attr-defined]
                self._predicate(model),
                model.version == expected_version,  # type: ignore[attr-defined]
            )
            .values(**values, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def update_where(
        self,
        model: type[Base],
        *criteria: ColumnElement[bool],
        values: dict[str, Any],
    ) -> int:
        """Conditional bulk update inside the scope; returns affected rows."""
        stmt = (
            update(model)
            .where(self._predicate(model), *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def delete_where(self, model: type[Base], *criteria: ColumnElement[bool]) -> int:
        stmt = delete(model).where(self._predicate(model), *criteria).execution_options(synchronize_session=False)
        result = await self._session.execute(stmt)
        return int(result.rowcount or 0)  # type: ignore[attr-defined]

    async def insert_if_absent(
        self,
        model: type[Base],
        values: dict[str, Any],
        index_elements: list[str],
    ) -> bool:
        """Atomically insert a row unless its key already exists.

        ``tenant_id`` is always taken from the scope and must be part of
        *index_elements*, so two tenants can never contend for one key.
        """
        _require_owned(model)
        if "tenant_id" not in index_elements:
            raise TypeError("insert_if_absent requires tenant_id in the conflict key")
        row = dict(values)
        row["tenant_id"] = self._scope.tenant_id
        return await _insert_on_conflict_do_nothing(self._session, model, row, index_elements)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class TenantDataGateway:
    """Factory for :class:`ScopedUnit` transactions bound to one tenant.

    Parameters
    ----------
    session_factory:
        Async session factory for the state store.
    scope:
        The tenant scope.  Anything other than a :class:`ScopeToken` is a
        programming error and raises :class:`ScopeRequired` immediately.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], scope: ScopeToken) -> None:
        if not isinstance(scope, ScopeToken):
            raise ScopeRequired(f"TenantDataGateway requires a ScopeToken, got {type(scope).__name__}")
        self._session_factory = session_factory
        self._scope = scope

    @property
    def scope(self) -> ScopeToken:
        return self._scope

    @asynccontextmanager
    async def unit(self) -> AsyncIterator[ScopedUnit]:
        """Open one atomic unit of work.

        Commits when the block exits normally; rolls back and re-raises on
        any exception.
        """
        async with self._session_factory() as session:
            async with session.begin():
                await set_tenant_context(session, self._scope.tenant_id)
                yield ScopedUnit(session, self._scope)
