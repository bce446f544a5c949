"""escrow schema

Revision ID: 0001_escrow_schema
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_escrow_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            buyer_id uuid NOT NULL,
            buyer_email text NOT NULL,
            seller_id uuid,
            seller_email text NOT NULL DEFAULT '',
            seller_phone text,
            deal_title text NOT NULL,
            deal_description text,
            amount numeric(14, 2) NOT NULL CHECK (amount > 0),
            currency text NOT NULL DEFAULT 'NGN',
            product_type text NOT NULL
                CHECK (product_type IN ('physical_product', 'digital_product', 'service')),
            status text NOT NULL DEFAULT 'pending_payment'
                CHECK (status IN (
                    'pending_payment', 'seller_joined', 'held', 'pending_delivery',
                    'pending_confirmation', 'pending_release', 'released', 'disputed',
                    'refund_requested', 'cancelled', 'expired'
                )),
            payment_reference text,
            proof_url text,
            proof_description text,
            admin_notes text,
            muted_ids uuid[] NOT NULL DEFAULT '{}',
            invite_token text,
            paid_at timestamptz,
            delivered_at timestamptz,
            confirmed_at timestamptz,
            released_at timestamptz,
            created_at timestamptz NOT NULL DEFAULT now(),
            updated_at timestamptz NOT NULL DEFAULT clock_timestamp()
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_transactions_buyer ON transactions (buyer_id, created_at DESC);")
    op.execute("CREATE INDEX IF NOT EXISTS ix_transactions_seller ON transactions (seller_id, created_at DESC);")
    op.execute("CREATE INDEX IF NOT EXISTS ix_transactions_status ON transactions (status, created_at);")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS invite_links (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            token text NOT NULL UNIQUE,
            transaction_id uuid NOT NULL REFERENCES transactions (id) ON DELETE CASCADE,
            created_by uuid NOT NULL,
            created_at timestamptz NOT NULL DEFAULT now(),
            expires_at timestamptz NOT NULL,
            used_by uuid,
            used_at timestamptz,
            is_active boolean NOT NULL DEFAULT true
        );
        """
    )
    # at most one live link per deal
    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_invite_links_active
        ON invite_links (transaction_id) WHERE is_active;
        """
    )

    # no FK: history outlives deleted deals
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS transaction_history (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            transaction_id uuid NOT NULL,
            actor_id uuid,
            action_type text NOT NULL,
            description text NOT NULL DEFAULT '',
            created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_history_tx ON transaction_history (transaction_id, created_at DESC);"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id uuid NOT NULL,
            title text NOT NULL,
            message text NOT NULL,
            type text NOT NULL DEFAULT 'info'
                CHECK (type IN ('info', 'success', 'warning', 'error')),
            link text,
            read boolean NOT NULL DEFAULT false,
            created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_notifications_user ON notifications (user_id, created_at DESC);"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS complaints (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            transaction_id uuid NOT NULL REFERENCES transactions (id) ON DELETE CASCADE,
            user_id uuid NOT NULL,
            user_email text NOT NULL,
            role text NOT NULL CHECK (role IN ('buyer', 'seller')),
            message text NOT NULL,
            resolved boolean NOT NULL DEFAULT false,
            admin_response text,
            created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS payout_accounts (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id uuid NOT NULL,
            payout_type text NOT NULL CHECK (payout_type IN ('bank', 'crypto')),
            is_default boolean NOT NULL DEFAULT false,
            bank_name text,
            account_number text,
            account_name text,
            crypto_currency text,
            wallet_address text,
            network text,
            created_at timestamptz NOT NULL DEFAULT now(),
            updated_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_payout_accounts_user ON payout_accounts (user_id);")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS messages (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            transaction_id uuid NOT NULL REFERENCES transactions (id) ON DELETE CASCADE,
            sender_id uuid NOT NULL,
            sender_email text NOT NULL,
            sender_role text NOT NULL,
            content text NOT NULL,
            is_deleted boolean NOT NULL DEFAULT false,
            created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_messages_tx ON messages (transaction_id, created_at);")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS site_settings (
            key text PRIMARY KEY,
            value text NOT NULL,
            updated_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS user_roles (
            user_id uuid NOT NULL,
            role text NOT NULL,
            created_at timestamptz NOT NULL DEFAULT now(),
            PRIMARY KEY (user_id, role)
        );
        """
    )


def downgrade() -> None:
    for table in (
        "user_roles",
        "site_settings",
        "messages",
        "payout_accounts",
        "complaints",
        "notifications",
        "transaction_history",
        "invite_links",
        "transactions",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table};")
