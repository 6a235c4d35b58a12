"""create period close and accounting correction tables

Revision ID: 202610010003
Revises: 202610010002
Create Date: 2026-10-01 10:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010003"
down_revision: str | None = "202610010002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "period_close_run",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("crop_cycle_id", sa.Uuid(), nullable=False),
        sa.Column("posting_group_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="COMPLETED"),
        sa.Column("from_date", sa.Date(), nullable=False),
        sa.Column("to_date", sa.Date(), nullable=False),
        sa.Column("net_profit", sa.Numeric(18, 2), nullable=False),
        sa.Column("snapshot_json", sa.JSON(), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_by", sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(["crop_cycle_id"], ["crop_cycle.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "crop_cycle_id", name="uq_period_close_run_cycle"),
        sa.CheckConstraint("status IN ('COMPLETED')", name="ck_period_close_run_status"),
    )

    op.create_table(
        "accounting_correction",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("original_posting_group_id", sa.Uuid(), nullable=True),
        sa.Column("reversal_posting_group_id", sa.Uuid(), nullable=True),
        sa.Column("corrected_posting_group_id", sa.Uuid(), nullable=True),
        sa.Column("operational_transaction_id", sa.Uuid(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["original_posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["reversal_posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["corrected_posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "kind IN ('SETTLEMENT_ACCOUNT_FIX', 'EXPENSE_RECLASS', 'PARTY_CONTROL_CONSOLIDATION')",
            name="ck_accounting_correction_kind",
        ),
    )
    op.create_index(
        "uq_accounting_correction_original",
        "accounting_correction",
        ["tenant_id", "original_posting_group_id"],
        unique=True,
        postgresql_where=sa.text("original_posting_group_id IS NOT NULL AND operational_transaction_id IS NULL"),
    )
    op.create_index(
        "uq_accounting_correction_operational",
        "accounting_correction",
        ["tenant_id", "operational_transaction_id"],
        unique=True,
        postgresql_where=sa.text("operational_transaction_id IS NOT NULL"),
    )
    op.create_index(
        "uq_accounting_correction_reason",
        "accounting_correction",
        ["tenant_id", "reason"],
        unique=True,
        postgresql_where=sa.text("original_posting_group_id IS NULL AND operational_transaction_id IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_accounting_correction_reason", table_name="accounting_correction")
    op.drop_index("uq_accounting_correction_operational", table_name="accounting_correction")
    op.drop_index("uq_accounting_correction_original", table_name="accounting_correction")
    op.drop_table("accounting_correction")
    op.drop_table("period_close_run")
