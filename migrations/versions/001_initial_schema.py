"""Initial invoicing schema

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # Create tenants table
    op.create_table(
        "tenants",
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("business_name", sa.String(255), nullable=False),
        sa.Column("rfc", sa.String(13), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    # Create subscription_plans table
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="MXN"),
        sa.Column("billing_period", sa.String(20), nullable=False, server_default="monthly"),
        sa.Column("invoice_limit", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    # Create tenant_subscriptions table
    op.create_table(
        "tenant_subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "plan_id", sa.Integer, sa.ForeignKey("subscription_plans.id"), nullable=False
        ),
        sa.Column("status", sa.String(30), nullable=False, server_default="trial"),
        sa.Column("invoices_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_subscription_tenant", "tenant_subscriptions", ["tenant_id"])
    op.create_index("idx_subscription_status", "tenant_subscriptions", ["status"])

    # Create tenant_folios table; one counter per tenant and series
    op.create_table(
        "tenant_folios",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("series", sa.String(5), nullable=False, server_default="A"),
        sa.Column("current_number", sa.Integer, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "series", name="uq_tenant_folio_series"),
    )

    # Create tenant_invoices table
    op.create_table(
        "tenant_invoices",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_invoice_id", sa.String(100), nullable=False),
        sa.Column("series", sa.String(5), nullable=False),
        sa.Column("folio_number", sa.Integer, nullable=False),
        sa.Column("customer_id", sa.String(100), nullable=True),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="valid"),
        sa.Column("invoice_type", sa.String(10), nullable=False, server_default="I"),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "tenant_id", "series", "folio_number", name="uq_tenant_invoice_folio"
        ),
    )
    op.create_index(
        "idx_invoice_tenant_created", "tenant_invoices", ["tenant_id", "created_at"]
    )
    op.create_index("idx_invoice_external", "tenant_invoices", ["external_invoice_id"])

    # Create tenant_folio_gaps table
    op.create_table(
        "tenant_folio_gaps",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("series", sa.String(5), nullable=False),
        sa.Column("folio_number", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(500), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("tenant_id", "series", "folio_number", name="uq_folio_gap"),
    )


def downgrade() -> None:
    op.drop_table("tenant_folio_gaps")
    op.drop_table("tenant_invoices")
    op.drop_table("tenant_folios")
    op.drop_table("tenant_subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("tenants")
