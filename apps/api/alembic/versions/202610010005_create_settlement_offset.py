"""create settlement offset table

Revision ID: 202610010005
Revises: 202610010004
Create Date: 2026-10-12 14:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010005"
down_revision: str | None = "202610010004"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "settlement_offset",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("settlement_id", sa.Uuid(), nullable=False),
        sa.Column("party_id", sa.Uuid(), nullable=False),
        sa.Column("posting_group_id", sa.Uuid(), nullable=False),
        sa.Column("posting_date", sa.Date(), nullable=False),
        sa.Column("offset_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["settlement_id"], ["settlement.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["party_id"], ["party.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["posting_group_id"], ["posting_group.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("settlement_id", name="uq_settlement_offset_settlement"),
        sa.CheckConstraint("offset_amount > 0", name="ck_settlement_offset_amount"),
    )
    op.create_index("ix_settlement_offset_party", "settlement_offset", ["tenant_id", "party_id"])

    if op.get_bind().dialect.name == "postgresql":
        op.execute(
            """
            CREATE TRIGGER trg_settlement_offset_immutable
            BEFORE UPDATE OR DELETE ON settlement_offset
            FOR EACH ROW EXECUTE FUNCTION farmledger_reject_mutation();
            """
        )


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS trg_settlement_offset_immutable ON settlement_offset")
    op.drop_index("ix_settlement_offset_party", table_name="settlement_offset")
    op.drop_table("settlement_offset")
