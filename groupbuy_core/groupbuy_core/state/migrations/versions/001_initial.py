"""Initial schema for the group-buy state store.

Creates the tenant registry, catalog, customers, orders and their side
records, the idempotency ledger, the notification queue and the webhook
dedup table.  Every tenant-owned table carries ``tenant_id`` with a
composite index or key that leads with it.

Revision ID: 001
Revises: None
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _tenant_fk() -> sa.Column:
    return sa.Column("tenant_id", sa.String(64), sa.ForeignKey("tenants.id"), nullable=False)


def _ts(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # ------------------------------------------------------------------
    # tenants
    # ------------------------------------------------------------------
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("host_messaging_id", sa.String(128), nullable=True),
        _ts("created_at"),
    )

    # ------------------------------------------------------------------
    # catalog
    # ------------------------------------------------------------------
    op.create_table(
        "products",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("orderable_until", nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_products_tenant", "products", ["tenant_id"])

    op.create_table(
        "product_variants",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("product_id", sa.String(64), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("price", sa.Integer(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_product_variants_tenant_product", "product_variants", ["tenant_id", "product_id"])

    # ------------------------------------------------------------------
    # customers
    # ------------------------------------------------------------------
    op.create_table(
        "customers",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("reference", sa.String(128), nullable=True),
        sa.Column("display_name", sa.String(256), nullable=True),
        sa.Column("is_guest", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("messaging_user_id", sa.String(128), nullable=True),
        sa.Column("link_nonce", sa.String(64), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("tenant_id", "reference", name="uq_customers_tenant_reference"),
        sa.UniqueConstraint("tenant_id", "link_nonce", name="uq_customers_tenant_link_nonce"),
    )

    # ------------------------------------------------------------------
    # orders and side records
    # ------------------------------------------------------------------
    op.create_table(
        "orders",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("customer_id", sa.String(64), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_orders_tenant_idempotency_key"),
        sa.CheckConstraint("version >= 1", name="ck_orders_version_positive"),
        sa.CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
    )
    op.create_index("ix_orders_tenant_status", "orders", ["tenant_id", "status"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.String(64), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("variant_id", sa.String(64), sa.ForeignKey("product_variants.id"), nullable=True),
        sa.Column("product_name", sa.String(512), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("line_total", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )
    op.create_index("ix_order_items_tenant_order", "order_items", ["tenant_id", "order_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("provider_reference", sa.String(256), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_payments_tenant_order", "payments", ["tenant_id", "order_id"])

    op.create_table(
        "shipments",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("carrier_reference", sa.String(256), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        _ts("created_at"),
        _ts("delivered_at", nullable=True),
    )
    op.create_index("ix_shipments_tenant_order", "shipments", ["tenant_id", "order_id"])

    # ------------------------------------------------------------------
    # idempotency ledger
    # ------------------------------------------------------------------
    op.create_table(
        "idempotency_records",
        _tenant_fk(),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("fingerprint", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("reservation_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=True),
        sa.Column("outcome", sa.JSON(), nullable=True),
        _ts("created_at"),
        _ts("completed_at", nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "key"),
    )
    op.create_index("ix_idempotency_records_expires", "idempotency_records", ["expires_at"])

    # ------------------------------------------------------------------
    # notification queue
    # ------------------------------------------------------------------
    op.create_table(
        "notification_events",
        sa.Column("id", sa.String(64), primary_key=True),
        _tenant_fk(),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("target", sa.String(16), nullable=False),
        sa.Column("trigger", sa.String(32), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _ts("next_attempt_at"),
        sa.Column("lease_owner", sa.String(128), nullable=True),
        _ts("lease_expires_at", nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("provider_status", sa.String(32), nullable=True),
        sa.Column("provider_report_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at"),
        _ts("sent_at", nullable=True),
        _ts("dead_lettered_at", nullable=True),
    )
    op.create_index("ix_notification_events_due", "notification_events", ["status", "next_attempt_at"])
    op.create_index("ix_notification_events_tenant_status", "notification_events", ["tenant_id", "status"])

    # ------------------------------------------------------------------
    # webhook dedup
    # ------------------------------------------------------------------
    op.create_table(
        "webhook_events",
        _tenant_fk(),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("signature_verified", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        _ts("received_at"),
        _ts("processed_at", nullable=True),
        sa.PrimaryKeyConstraint("tenant_id", "event_id"),
    )


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_index("ix_notification_events_tenant_status", table_name="notification_events")
    op.drop_index("ix_notification_events_due", table_name="notification_events")
    op.drop_table("notification_events")
    op.drop_index("ix_idempotency_records_expires", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    op.drop_index("ix_shipments_tenant_order", table_name="shipments")
    op.drop_table("shipments")
    op.drop_index("ix_payments_tenant_order", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_order_items_tenant_order", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_tenant_status", table_name="orders")
    op.drop_table("orders")
    op.drop_table("customers")
    op.drop_index("ix_product_variants_tenant_product", table_name="product_variants")
    op.drop_table("product_variants")
    op.drop_index("ix_products_tenant", table_name="products")
    op.drop_table("products")
    op.drop_table("tenants")
