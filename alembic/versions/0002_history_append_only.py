"""make transaction_history append-only

Revision ID: 0002_history_append_only
Revises: 0001_escrow_schema
Create Date: 2026-10-01 00:10:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0002_history_append_only"
down_revision = "0001_escrow_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # surfaces through services.db_errors as ValidationError(HISTORY_APPEND_ONLY)
    op.execute(
        """
        CREATE OR REPLACE FUNCTION transaction_history_append_only()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'ESCROW_ERROR: HISTORY_APPEND_ONLY history rows cannot be changed';
        END;
        $$;
        """
    )
    op.execute(
        """
        DROP TRIGGER IF EXISTS trg_transaction_history_append_only ON transaction_history;
        CREATE TRIGGER trg_transaction_history_append_only
        BEFORE UPDATE OR DELETE ON transaction_history
        FOR EACH ROW EXECUTE FUNCTION transaction_history_append_only();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_transaction_history_append_only ON transaction_history;")
    op.execute("DROP FUNCTION IF EXISTS transaction_history_append_only();")
