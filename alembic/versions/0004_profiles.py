"""profiles with moderation columns

Revision ID: 0004_profiles
Revises: 0003_seed_fee_settings
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0004_profiles"
down_revision = "0003_seed_fee_settings"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS profiles (
          id uuid PRIMARY KEY,
          email text NOT NULL DEFAULT '',
          full_name text,
          phone text,
          created_at timestamptz NOT NULL DEFAULT now(),
          updated_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    # the auth platform may have created profiles already; add what moderation needs
    op.execute(
        """
        ALTER TABLE profiles
          ADD COLUMN IF NOT EXISTS status text NOT NULL DEFAULT 'active',
          ADD COLUMN IF NOT EXISTS suspension_reason text,
          ADD COLUMN IF NOT EXISTS can_chat boolean NOT NULL DEFAULT true;
        """
    )
    op.execute(
        """
        ALTER TABLE profiles
          ADD CONSTRAINT profiles_status_check CHECK (status IN ('active', 'suspended'));
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS profiles_created_at_idx ON profiles (created_at DESC);")


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS profiles_created_at_idx;")
    op.execute("ALTER TABLE profiles DROP CONSTRAINT IF EXISTS profiles_status_check;")
    op.execute(
        """
        ALTER TABLE profiles
          DROP COLUMN IF EXISTS can_chat,
          DROP COLUMN IF EXISTS suspension_reason,
          DROP COLUMN IF EXISTS status;
        """
    )
