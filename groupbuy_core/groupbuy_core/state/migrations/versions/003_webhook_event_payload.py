"""Store verified webhook events before they are applied.

Adds the raw event ``payload`` plus ``attempts`` / ``last_error`` to
``webhook_events`` so a verified event is durable once acknowledged and a
failed routing attempt can be replayed by the dispatcher's sweep.

The sweep finds tenants with unapplied events across tenants (tenant ids
only), the same way the due-notification scan does, so ``webhook_events``
leaves row-level security like ``notification_events``.  Per-row reads and
writes still go through the gateway's tenant predicate.

Revision ID: 003
Revises: 002
Create Date: 2026-10-18 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "003"
down_revision: str | None = "002"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("webhook_events", sa.Column("payload", sa.JSON(), nullable=True))
    op.add_column("webhook_events", sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"))
    op.add_column("webhook_events", sa.Column("last_error", sa.Text(), nullable=True))
    op.create_index("ix_webhook_events_status_received", "webhook_events", ["status", "received_at"])

    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP POLICY IF EXISTS tenant_isolation_webhook_events ON webhook_events")
        op.execute("ALTER TABLE webhook_events NO FORCE ROW LEVEL SECURITY")
        op.execute("ALTER TABLE webhook_events DISABLE ROW LEVEL SECURITY")


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("ALTER TABLE webhook_events ENABLE ROW LEVEL SECURITY")
        op.execute("ALTER TABLE webhook_events FORCE ROW LEVEL SECURITY")
        op.execute(
            "CREATE POLICY tenant_isolation_webhook_events ON webhook_events "
            "USING (tenant_id = current_setting('app.tenant_id', true)) "
            "WITH CHECK (tenant_id = current_setting('app.tenant_id', true))"
        )

    op.drop_index("ix_webhook_events_status_received", table_name="webhook_events")
    op.drop_column("webhook_events", "last_error")
    op.drop_column("webhook_events", "attempts")
    op.drop_column("webhook_events", "payload")
