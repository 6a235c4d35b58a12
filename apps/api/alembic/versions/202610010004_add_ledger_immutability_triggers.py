"""add ledger immutability and closed cycle triggers

Revision ID: 202610010004
Revises: 202610010003
Create Date: 2026-10-01 10:30:00
"""

from collections.abc import Sequence

from alembic import op


revision: str = "202610010004"
down_revision: str | None = "202610010003"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

IMMUTABLE_TABLES = (
    "posting_group",
    "ledger_entry",
    "allocation_row",
    "period_close_run",
    "accounting_correction",
)


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return

    op.execute(
        """
        CREATE OR REPLACE FUNCTION farmledger_reject_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% rows are immutable', TG_TABLE_NAME
                USING ERRCODE = 'integrity_constraint_violation';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    for table in IMMUTABLE_TABLES:
        op.execute(
            f"""
            CREATE TRIGGER trg_{table}_immutable
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION farmledger_reject_mutation();
            """
        )

    op.execute(
        """
        CREATE OR REPLACE FUNCTION farmledger_reject_closed_cycle_posting() RETURNS trigger AS $$
        BEGIN
            IF NEW.crop_cycle_id IS NOT NULL AND EXISTS (
                SELECT 1 FROM crop_cycle WHERE id = NEW.crop_cycle_id AND status = 'CLOSED'
            ) THEN
                RAISE EXCEPTION 'crop cycle % is closed', NEW.crop_cycle_id
                    USING ERRCODE = 'integrity_constraint_violation';
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_posting_group_closed_cycle
        BEFORE INSERT ON posting_group
        FOR EACH ROW EXECUTE FUNCTION farmledger_reject_closed_cycle_posting();
        """
    )

    op.execute(
        """
        CREATE OR REPLACE FUNCTION farmledger_reject_cycle_reopen() RETURNS trigger AS $$
        BEGIN
            IF OLD.status = 'CLOSED' AND NEW.status <> 'CLOSED' THEN
                RAISE EXCEPTION 'crop cycle % cannot be reopened', OLD.id
                    USING ERRCODE = 'integrity_constraint_violation';
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_crop_cycle_no_reopen
        BEFORE UPDATE ON crop_cycle
        FOR EACH ROW EXECUTE FUNCTION farmledger_reject_cycle_reopen();
        """
    )

    op.execute(
        """
        CREATE OR REPLACE FUNCTION farmledger_check_group_balanced() RETURNS trigger AS $$
        DECLARE
            total_debit NUMERIC(18, 2);
            total_credit NUMERIC(18, 2);
        BEGIN
            SELECT COALESCE(SUM(debit_amount), 0), COALESCE(SUM(credit_amount), 0)
              INTO total_debit, total_credit
              FROM ledger_entry
             WHERE posting_group_id = NEW.posting_group_id;
            IF total_debit <> total_credit THEN
                RAISE EXCEPTION 'posting group % is unbalanced', NEW.posting_group_id
                    USING ERRCODE = 'integrity_constraint_violation';
            END IF;
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE CONSTRAINT TRIGGER trg_ledger_entry_balanced
        AFTER INSERT ON ledger_entry
        DEFERRABLE INITIALLY DEFERRED
        FOR EACH ROW EXECUTE FUNCTION farmledger_check_group_balanced();
        """
    )


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return

    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entry_balanced ON ledger_entry")
    op.execute("DROP FUNCTION IF EXISTS farmledger_check_group_balanced()")
    op.execute("DROP TRIGGER IF EXISTS trg_crop_cycle_no_reopen ON crop_cycle")
    op.execute("DROP FUNCTION IF EXISTS farmledger_reject_cycle_reopen()")
    op.execute("DROP TRIGGER IF EXISTS trg_posting_group_closed_cycle ON posting_group")
    op.execute("DROP FUNCTION IF EXISTS farmledger_reject_closed_cycle_posting()")
    for table in IMMUTABLE_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_immutable ON {table}")
    op.execute("DROP FUNCTION IF EXISTS farmledger_reject_mutation()")
