"""create ledger tables

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
        "ledger_account",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "code", name="uq_ledger_account_code"),
        sa.CheckConstraint(
            "type IN ('ASSET', 'LIABILITY', 'EQUITY', 'INCOME', 'EXPENSE')",
            name="ck_ledger_account_type",
        ),
    )
    op.create_index("ix_ledger_account_tenant", "ledger_account", ["tenant_id"])

    op.create_table(
        "crop_cycle",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="OPEN"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('OPEN', 'CLOSED')", name="ck_crop_cycle_status"),
        sa.CheckConstraint("end_date IS NULL OR end_date >= start_date", name="ck_crop_cycle_dates"),
    )
    op.create_index("ix_crop_cycle_tenant", "crop_cycle", ["tenant_id"])

    op.create_table(
        "posting_group",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("crop_cycle_id", sa.Uuid(), nullable=True),
        sa.Column("source_type", sa.String(length=64), nullable=False),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("posting_date", sa.Date(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=True),
        sa.Column("reversal_of_posting_group_id", sa.Uuid(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["crop_cycle_id"], ["crop_cycle.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["reversal_of_posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "source_type", "source_id", name="uq_posting_group_source"),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_posting_group_idempotency_key"),
        sa.UniqueConstraint("tenant_id", "reversal_of_posting_group_id", name="uq_posting_group_reversal_of"),
    )
    op.create_index("ix_posting_group_tenant_date", "posting_group", ["tenant_id", "posting_date"])
    op.create_index("ix_posting_group_crop_cycle", "posting_group", ["crop_cycle_id"])

    op.create_table(
        "ledger_entry",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("posting_group_id", sa.Uuid(), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("debit_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("credit_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["account_id"], ["ledger_account.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("debit_amount >= 0", name="ck_ledger_entry_debit_nonnegative"),
        sa.CheckConstraint("credit_amount >= 0", name="ck_ledger_entry_credit_nonnegative"),
        sa.CheckConstraint(
            "((debit_amount > 0 AND credit_amount = 0) OR (credit_amount > 0 AND debit_amount = 0))",
            name="ck_ledger_entry_single_sided",
        ),
    )
    op.create_index("ix_ledger_entry_group", "ledger_entry", ["tenant_id", "posting_group_id"])
    op.create_index("ix_ledger_entry_account", "ledger_entry", ["account_id"])

    op.create_table(
        "allocation_row",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("posting_group_id", sa.Uuid(), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        sa.Column("party_id", sa.Uuid(), nullable=True),
        sa.Column("machine_id", sa.Uuid(), nullable=True),
        sa.Column("allocation_type", sa.String(length=64), nullable=False),
        sa.Column("allocation_scope", sa.String(length=32), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("quantity", sa.Numeric(18, 3), nullable=True),
        sa.Column("unit", sa.String(length=32), nullable=True),
        sa.Column("rule_snapshot", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "allocation_scope IS NULL OR allocation_scope IN ('SHARED', 'HARI_ONLY', 'LANDLORD_ONLY', 'PARTY_ONLY')",
            name="ck_allocation_row_scope",
        ),
    )
    op.create_index("ix_allocation_row_group", "allocation_row", ["tenant_id", "posting_group_id"])
    op.create_index("ix_allocation_row_project_type", "allocation_row", ["tenant_id", "project_id", "allocation_type"])


def downgrade() -> None:
    op.drop_index("ix_allocation_row_project_type", table_name="allocation_row")
    op.drop_index("ix_allocation_row_group", table_name="allocation_row")
    op.drop_table("allocation_row")
    op.drop_index("ix_ledger_entry_account", table_name="ledger_entry")
    op.drop_index("ix_ledger_entry_group", table_name="ledger_entry")
    op.drop_table("ledger_entry")
    op.drop_index("ix_posting_group_crop_cycle", table_name="posting_group")
    op.drop_index("ix_posting_group_tenant_date", table_name="posting_group")
    op.drop_table("posting_group")
    op.drop_index("ix_crop_cycle_tenant", table_name="crop_cycle")
    op.drop_table("crop_cycle")
    op.drop_index("ix_ledger_account_tenant", table_name="ledger_account")
    op.drop_table("ledger_account")
