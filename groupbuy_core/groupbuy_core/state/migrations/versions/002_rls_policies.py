"""Enable Row-Level Security on tenant-owned tables.

Each table gets a policy tying ``tenant_id`` to the transaction-local
``app.tenant_id`` setting that the gateway sets at the start of every unit.
``current_setting(..., true)`` yields NULL when unset, so a session that
never set a scope sees no rows.

``tenants`` and ``notification_events`` are left out: the dispatcher's
due-tenant scan reads across tenants (tenant ids only) before it opens
scoped units.  Every per-row read and write on ``notification_events``
still goes through the gateway's tenant predicate.

PostgreSQL only; a no-op on other dialects.

Revision ID: 002
Revises: 001
Create Date: 2026-09-01 00:10:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op

revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_TENANT_TABLES: list[str] = [
    "products",
    "product_variants",
    "customers",
    "orders",
    "order_items",
    "payments",
    "shipments",
    "idempotency_records",
    "webhook_events",
]


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    for table in _TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation_{table} ON {table} "
            f"USING (tenant_id = current_setting('app.tenant_id', true)) "
            f"WITH CHECK (tenant_id = current_setting('app.tenant_id', true))"
        )


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    for table in reversed(_TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
