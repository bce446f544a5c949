"""seed fee settings

Revision ID: 0003_seed_fee_settings
Revises: 0002_history_append_only
Create Date: 2026-10-01 00:20:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0003_seed_fee_settings"
down_revision = "0002_history_append_only"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        INSERT INTO site_settings (key, value) VALUES
          ('service_fee_percent', '5'),
          ('high_value_fee_percent', '2'),
          ('high_value_threshold', '10000')
        ON CONFLICT (key) DO NOTHING;
        """
    )


def downgrade() -> None:
    op.execute(
        """
        DELETE FROM site_settings
        WHERE key IN ('service_fee_percent', 'high_value_fee_percent', 'high_value_threshold');
        """
    )
