"""Initial schema: platform connections, credit accounts, credit ledger.

Revision ID: c3f1a9d2e7b4
Revises:
Create Date: 2026-10-17 09:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "c3f1a9d2e7b4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Platform connections (soft-deactivated, never deleted)
    op.create_table(
        "platform_connections",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("platform", sa.String(16), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("base_url", sa.String(500), nullable=False, server_default=""),
        sa.Column("credential", sa.Text(), nullable=False, server_default=""),
        sa.Column("settings", postgresql.JSONB(), server_default="{}"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_tested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_test_success", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("platform IN ('n8n', 'make', 'zapier')", name="ck_platform_connections_platform"),
        comment="Per-tenant platform credentials (soft-deactivated, never deleted)",
    )
    op.create_index(
        "ix_platform_connections_tenant_platform",
        "platform_connections",
        ["tenant_id", "platform", "is_active"],
    )
    # At most one active connection per (tenant, platform)
    op.create_index(
        "uq_platform_connections_one_active",
        "platform_connections",
        ["tenant_id", "platform"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    # Credit accounts (cache over the ledger)
    op.create_table(
        "credit_accounts",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("regular_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("bonus_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("prefer_bonus_first", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("period_started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("regular_balance >= 0", name="ck_credit_accounts_regular_non_negative"),
        sa.CheckConstraint("bonus_balance >= 0", name="ck_credit_accounts_bonus_non_negative"),
        comment="One row per tenant; cache over credit_transactions",
    )

    # Credit ledger (append-only)
    op.create_table(
        "credit_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "tenant_id", sa.String(64),
            sa.ForeignKey("credit_accounts.tenant_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(255), nullable=False),
        sa.Column(
            "connection_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("platform_connections.id", ondelete="RESTRICT"), nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("kind IN ('regular', 'bonus')", name="ck_credit_transactions_kind"),
        comment="Append-only credit ledger",
    )
    op.create_index("ix_credit_transactions_tenant_created", "credit_transactions", ["tenant_id", "created_at"])
    op.create_index("ix_credit_transactions_tenant_kind", "credit_transactions", ["tenant_id", "kind"])

    # Ledger rows are never updated or deleted
    op.execute("""
        CREATE OR REPLACE FUNCTION credit_transactions_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'credit_transactions is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER credit_transactions_no_update_delete
        BEFORE UPDATE OR DELETE ON credit_transactions
        FOR EACH ROW EXECUTE FUNCTION credit_transactions_immutable()
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS credit_transactions_no_update_delete ON credit_transactions")
    op.execute("DROP FUNCTION IF EXISTS credit_transactions_immutable()")
    op.drop_table("credit_transactions")
    op.drop_table("credit_accounts")
    op.drop_index("uq_platform_connections_one_active", table_name="platform_connections")
    op.drop_index("ix_platform_connections_tenant_platform", table_name="platform_connections")
    op.drop_table("platform_connections")
