"""create billing tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "billing_pricing_tier",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("min_users", sa.Integer(), nullable=False),
        sa.Column("max_users", sa.Integer(), nullable=True),
        sa.Column("price_per_user", sa.BigInteger(), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "order", name="uq_billing_pricing_tier_tenant_order"),
    )
    op.create_index("ix_billing_pricing_tier_tenant", "billing_pricing_tier", ["tenant_id"])

    op.create_table(
        "billing_proration_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("billing_month", sa.Date(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("event_date", sa.Date(), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("user_count_before", sa.Integer(), nullable=False),
        sa.Column("user_count_after", sa.Integer(), nullable=False),
        sa.Column("days_in_month", sa.Integer(), nullable=False),
        sa.Column("remaining_days", sa.Integer(), nullable=False),
        sa.Column("monthly_price_before", sa.BigInteger(), nullable=False),
        sa.Column("monthly_price_after", sa.BigInteger(), nullable=False),
        sa.Column("daily_charge", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "billing_month", "sequence", name="uq_billing_proration_event_sequence"),
    )
    op.create_index("ix_billing_proration_event_scope", "billing_proration_event", ["tenant_id", "billing_month"])

    op.create_table(
        "billing_invoice",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_number", sa.String(length=32), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("tenant_name", sa.String(length=255), nullable=False),
        sa.Column("billing_month", sa.Date(), nullable=False),
        sa.Column("subtotal", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tax", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("sent_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_email", sa.String(length=320), nullable=False),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("ledger_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number", name="uq_billing_invoice_number"),
        sa.UniqueConstraint("tenant_id", "billing_month", name="uq_billing_invoice_tenant_month"),
    )
    op.create_index("ix_billing_invoice_status_due", "billing_invoice", ["status", "due_date"])

    op.create_table(
        "billing_invoice_item",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.BigInteger(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("period", sa.String(length=64), nullable=True),
        sa.Column("source_type", sa.String(length=32), nullable=False),
        sa.Column("source_id", sa.Uuid(), nullable=True),
        sa.ForeignKeyConstraint(["invoice_id"], ["billing_invoice.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_invoice_item_invoice", "billing_invoice_item", ["invoice_id"])

    op.create_table(
        "billing_invoice_sequence",
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("year", "month"),
    )


def downgrade() -> None:
    op.drop_table("billing_invoice_sequence")
    op.drop_index("ix_billing_invoice_item_invoice", table_name="billing_invoice_item")
    op.drop_table("billing_invoice_item")
    op.drop_index("ix_billing_invoice_status_due", table_name="billing_invoice")
    op.drop_table("billing_invoice")
    op.drop_index("ix_billing_proration_event_scope", table_name="billing_proration_event")
    op.drop_table("billing_proration_event")
    op.drop_index("ix_billing_pricing_tier_tenant", table_name="billing_pricing_tier")
    op.drop_table("billing_pricing_tier")
