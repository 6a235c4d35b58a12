"""create projects and settlement tables

Revision ID: 202610010002
Revises: 202610010001
Create Date: 2026-10-01 09:30:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010002"
down_revision: str | None = "202610010001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "party",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("party_type", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("party_type IN ('LANDLORD', 'HARI', 'KAMDAR', 'OTHER')", name="ck_party_type"),
    )
    op.create_index("ix_party_tenant", "party", ["tenant_id"])

    op.create_table(
        "project",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("crop_cycle_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("hari_party_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["crop_cycle_id"], ["crop_cycle.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["hari_party_id"], ["party.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('ACTIVE', 'CLOSED')", name="ck_project_status"),
    )
    op.create_index("ix_project_tenant_cycle", "project", ["tenant_id", "crop_cycle_id"])

    op.create_table(
        "share_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("applies_to", sa.String(length=16), nullable=False),
        sa.Column("basis", sa.String(length=16), nullable=False, server_default="MARGIN"),
        sa.Column("kamdari_order", sa.String(length=32), nullable=False, server_default="BEFORE_SPLIT"),
        sa.Column("effective_from", sa.Date(), nullable=False),
        sa.Column("effective_to", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("applies_to IN ('CROP_CYCLE', 'PROJECT', 'SALE')", name="ck_share_rule_applies_to"),
        sa.CheckConstraint("basis IN ('MARGIN', 'REVENUE')", name="ck_share_rule_basis"),
        sa.CheckConstraint("effective_to IS NULL OR effective_to >= effective_from", name="ck_share_rule_dates"),
        sa.UniqueConstraint("tenant_id", "applies_to", "version", name="uq_share_rule_version"),
    )
    op.create_index("ix_share_rule_tenant_scope", "share_rule", ["tenant_id", "applies_to", "is_active"])

    op.create_table(
        "share_rule_line",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("share_rule_id", sa.Uuid(), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("party_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("percentage", sa.Numeric(5, 2), nullable=False),
        sa.ForeignKeyConstraint(["share_rule_id"], ["share_rule.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["party_id"], ["party.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("percentage >= 0 AND percentage <= 100", name="ck_share_rule_line_percentage"),
        sa.CheckConstraint("role IN ('LANDLORD', 'HARI', 'KAMDAR')", name="ck_share_rule_line_role"),
    )
    op.create_index("ix_share_rule_line_rule", "share_rule_line", ["share_rule_id"])

    op.create_table(
        "settlement",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("settlement_no", sa.String(length=32), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("share_rule_id", sa.Uuid(), nullable=False),
        sa.Column("crop_cycle_id", sa.Uuid(), nullable=False),
        sa.Column("from_date", sa.Date(), nullable=False),
        sa.Column("to_date", sa.Date(), nullable=False),
        sa.Column("basis", sa.String(length=16), nullable=False),
        sa.Column("pool_revenue", sa.Numeric(18, 2), nullable=False),
        sa.Column("shared_costs", sa.Numeric(18, 2), nullable=False),
        sa.Column("pool_profit", sa.Numeric(18, 2), nullable=False),
        sa.Column("basis_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("kamdari_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("distributable", sa.Numeric(18, 2), nullable=False),
        sa.Column("hari_only_deductions", sa.Numeric(18, 2), nullable=False),
        sa.Column("rule_snapshot", sa.JSON(), nullable=False),
        sa.Column("posting_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="DRAFT"),
        sa.Column("posting_group_id", sa.Uuid(), nullable=True),
        sa.Column("reversal_posting_group_id", sa.Uuid(), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("posted_by", sa.String(length=255), nullable=True),
        sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reversed_by", sa.String(length=255), nullable=True),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["project.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["share_rule_id"], ["share_rule.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["crop_cycle_id"], ["crop_cycle.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["reversal_posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('DRAFT', 'POSTED', 'REVERSED')", name="ck_settlement_status"),
        sa.CheckConstraint("status = 'DRAFT' OR posting_group_id IS NOT NULL", name="ck_settlement_posted_has_group"),
        sa.CheckConstraint("from_date <= to_date", name="ck_settlement_window"),
        sa.UniqueConstraint("tenant_id", "settlement_no", name="uq_settlement_no"),
    )
    op.create_index("ix_settlement_tenant_status", "settlement", ["tenant_id", "status"])
    op.create_index("ix_settlement_project", "settlement", ["project_id"])

    op.create_table(
        "settlement_line",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("settlement_id", sa.Uuid(), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("party_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("gross_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("deductions", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.ForeignKeyConstraint(["settlement_id"], ["settlement.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["party_id"], ["party.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("percentage >= 0 AND percentage <= 100", name="ck_settlement_line_percentage"),
    )
    op.create_index("ix_settlement_line_settlement", "settlement_line", ["settlement_id"])


def downgrade() -> None:
    op.drop_index("ix_settlement_line_settlement", table_name="settlement_line")
    op.drop_table("settlement_line")
    op.drop_index("ix_settlement_project", table_name="settlement")
    op.drop_index("ix_settlement_tenant_status", table_name="settlement")
    op.drop_table("settlement")
    op.drop_index("ix_share_rule_line_rule", table_name="share_rule_line")
    op.drop_table("share_rule_line")
    op.drop_index("ix_share_rule_tenant_scope", table_name="share_rule")
    op.drop_table("share_rule")
    op.drop_index("ix_project_tenant_cycle", table_name="project")
    op.drop_table("project")
    op.drop_index("ix_party_tenant", table_name="party")
    op.drop_table("party")
