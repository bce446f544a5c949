# app/escrow/pg_store.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence

from psycopg2.extras import RealDictCursor

from app.escrow.errors import EscrowError, NotFoundError, StaleStateError
from app.escrow.model import (
    ChatMessage,
    Complaint,
    HistoryEntry,
    InviteLink,
    Notification,
    PayoutAccount,
    Profile,
    Transaction,
    TransactionStatus,
)
from app.escrow.store import (
    MUTABLE_PAYOUT_COLUMNS,
    MUTABLE_PROFILE_COLUMNS,
    MUTABLE_TRANSACTION_COLUMNS,
    check_columns,
)
from db import get_conn
from db_session import set_db_actor
from services.db_errors import escrow_error_from_db
from services.observability import get_actor_id

logger = logging.getLogger("escrow.store")


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (tuple, frozenset, set)):
        return list(value)
    return value


def _params(data: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _db_value(v) for k, v in data.items()}


def _placeholder(col: str) -> str:
    if col == "muted_ids":
        return "%(muted_ids)s::uuid[]"
    return f"%({col})s"


class PostgresEscrowStore:
    """EscrowStore over the hosted Postgres. Every method is one DB transaction."""

    @contextmanager
    def _cursor(self):
        try:
            with get_conn() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    set_db_actor(cur, get_actor_id())
                    yield cur
        except EscrowError:
            raise
        except Exception as e:
            mapped = escrow_error_from_db(e)
            if mapped is None:
                raise
            raise mapped from e

    # ==========================================================
    # Transactions
    # ==========================================================

    def insert_transaction(self, tx: Transaction) -> Transaction:
        data = _params(asdict(tx))
        cols = list(data)
        sql = f"""
        INSERT INTO transactions ({", ".join(cols)})
        VALUES ({", ".join(_placeholder(c) for c in cols)})
        RETURNING *
        """
        with self._cursor() as cur:
            cur.execute(sql, data)
            return Transaction.from_row(cur.fetchone())

    def get_transaction(self, tx_id: str) -> Optional[Transaction]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM transactions WHERE id = %s", (tx_id,))
            row = cur.fetchone()
        return Transaction.from_row(row) if row else None

    def list_transactions(
        self,
        *,
        buyer_id: Optional[str] = None,
        seller_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        search: Optional[str] = None,
        limit: int = 200,
    ) -> list[Transaction]:
        where = ["TRUE"]
        params: dict[str, Any] = {"limit": int(limit)}
        if buyer_id is not None:
            where.append("buyer_id = %(buyer_id)s")
            params["buyer_id"] = buyer_id
        if seller_id is not None:
            where.append("seller_id = %(seller_id)s")
            params["seller_id"] = seller_id
        if status is not None:
            where.append("status = %(status)s")
            params["status"] = TransactionStatus(status).value
        needle = (search or "").strip()
        if needle:
            where.append(
                """(
                  deal_title ILIKE %(q)s
                  OR buyer_email ILIKE %(q)s
                  OR seller_email ILIKE %(q)s
                  OR seller_phone ILIKE %(q)s
                  OR payment_reference ILIKE %(q)s
                  OR id::text ILIKE %(q)s
                )"""
            )
            params["q"] = f"%{needle}%"

        sql = f"""
        SELECT * FROM transactions
        WHERE {" AND ".join(where)}
        ORDER BY created_at DESC
        LIMIT %(limit)s
        """
        with self._cursor() as cur:
            cur.execute(sql, params)
            return [Transaction.from_row(r) for r in cur.fetchall()]

    def update_transaction(
        self, tx_id: str, *, expected_updated_at: datetime, changes: Mapping[str, Any]
    ) -> Transaction:
        check_columns(changes, MUTABLE_TRANSACTION_COLUMNS)
        data = _params(changes)
        sets = [f"{c} = {_placeholder(c)}" for c in data]
        sets.append("updated_at = clock_timestamp()")
        data["_id"] = tx_id
        data["_expected"] = expected_updated_at

        sql = f"""
        UPDATE transactions
        SET {", ".join(sets)}
        WHERE id = %(_id)s AND updated_at = %(_expected)s
        RETURNING *
        """
        with self._cursor() as cur:
            cur.execute(sql, data)
            row = cur.fetchone()
            if row is None:
                cur.execute("SELECT 1 FROM transactions WHERE id = %s", (tx_id,))
                if cur.fetchone() is None:
                    raise NotFoundError("transaction not found", code="TRANSACTION_NOT_FOUND")
                raise StaleStateError("transaction changed, reload and retry", code="STALE_STATE")
            return Transaction.from_row(row)

    def delete_transaction(self, tx_id: str, *, expected_updated_at: datetime) -> None:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM transactions WHERE id = %s AND updated_at = %s",
                (tx_id, expected_updated_at),
            )
            if cur.rowcount == 0:
                cur.execute("SELECT 1 FROM transactions WHERE id = %s", (tx_id,))
                if cur.fetchone() is None:
                    raise NotFoundError("transaction not found", code="TRANSACTION_NOT_FOUND")
                raise StaleStateError("transaction changed, reload and retry", code="STALE_STATE")

    # ==========================================================
    # Invite links
    # ==========================================================

    def insert_invite(self, link: InviteLink) -> InviteLink:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE invite_links SET is_active = false WHERE transaction_id = %s AND is_active",
                (link.transaction_id,),
            )
            cur.execute(
                """
                INSERT INTO invite_links (id, token, transaction_id, created_by, created_at, expires_at, is_active)
                VALUES (%(id)s, %(token)s, %(transaction_id)s, %(created_by)s, %(created_at)s, %(expires_at)s, true)
                RETURNING *
                """,
                _params(asdict(link)),
            )
            row = cur.fetchone()
            cur.execute(
                "UPDATE transactions SET invite_token = %s, updated_at = clock_timestamp() WHERE id = %s",
                (link.token, link.transaction_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError("transaction not found", code="TRANSACTION_NOT_FOUND")
            return InviteLink.from_row(row)

    def get_invite(self, token: str) -> Optional[InviteLink]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM invite_links WHERE token = %s", (token,))
            row = cur.fetchone()
        return InviteLink.from_row(row) if row else None

    def list_invites(self, tx_id: str) -> list[InviteLink]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM invite_links WHERE transaction_id = %s ORDER BY created_at DESC",
                (tx_id,),
            )
            return [InviteLink.from_row(r) for r in cur.fetchall()]

    def redeem_invite(
        self, token: str, *, redeemer_id: str, redeemer_email: str, now: datetime
    ) -> tuple[Transaction, InviteLink]:
        """
        Claim the link and attach the seller in one DB transaction.
        Both updates are conditional; if either matches nothing the whole
        transaction rolls back and the caller lost the race.
        """
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE invite_links
                SET used_by = %s, used_at = %s, is_active = false
                WHERE token = %s
                  AND used_by IS NULL
                  AND is_active
                  AND expires_at >= %s
                RETURNING *
                """,
                (redeemer_id, now, token, now),
            )
            link_row = cur.fetchone()
            if link_row is None:
                cur.execute("SELECT 1 FROM invite_links WHERE token = %s", (token,))
                if cur.fetchone() is None:
                    raise NotFoundError("invite link not found", code="INVITE_INVALID")
                raise StaleStateError("invite link already used", code="INVITE_ALREADY_USED")

            cur.execute(
                """
                UPDATE transactions
                SET seller_id = %s,
                    seller_email = %s,
                    status = 'seller_joined',
                    updated_at = clock_timestamp()
                WHERE id = %s
                  AND seller_id IS NULL
                  AND status = 'pending_payment'
                RETURNING *
                """,
                (redeemer_id, redeemer_email, link_row["transaction_id"]),
            )
            tx_row = cur.fetchone()
            if tx_row is None:
                raise StaleStateError("invite link already used", code="INVITE_ALREADY_USED")

            logger.info("invite redeemed tx_id=%s", tx_row["id"])
            return Transaction.from_row(tx_row), InviteLink.from_row(link_row)

    # ==========================================================
    # Notifications
    # ==========================================================

    def insert_notifications(self, items: Sequence[Notification]) -> list[Notification]:
        out = []
        with self._cursor() as cur:
            for n in items:
                cur.execute(
                    """
                    INSERT INTO notifications (id, user_id, title, message, type, link, read, created_at)
                    VALUES (%(id)s, %(user_id)s, %(title)s, %(message)s, %(type)s, %(link)s, %(read)s, %(created_at)s)
                    RETURNING *
                    """,
                    _params(asdict(n)),
                )
                out.append(Notification.from_row(cur.fetchone()))
        return out

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM notifications WHERE id = %s", (notification_id,))
            row = cur.fetchone()
        return Notification.from_row(row) if row else None

    def list_notifications(
        self, user_id: str, *, unread_only: bool = False, limit: int = 100
    ) -> list[Notification]:
        sql = "SELECT * FROM notifications WHERE user_id = %s"
        if unread_only:
            sql += " AND NOT read"
        sql += " ORDER BY created_at DESC LIMIT %s"
        with self._cursor() as cur:
            cur.execute(sql, (user_id, int(limit)))
            return [Notification.from_row(r) for r in cur.fetchall()]

    def mark_notifications_read(self, user_id: str, ids: Optional[Iterable[str]] = None) -> int:
        with self._cursor() as cur:
            if ids is None:
                cur.execute(
                    "UPDATE notifications SET read = true WHERE user_id = %s AND NOT read",
                    (user_id,),
                )
            else:
                cur.execute(
                    "UPDATE notifications SET read = true WHERE user_id = %s AND NOT read AND id = ANY(%s::uuid[])",
                    (user_id, list(ids)),
                )
            return cur.rowcount

    def delete_notifications(self, user_id: str, ids: Optional[Iterable[str]] = None) -> int:
        with self._cursor() as cur:
            if ids is None:
                cur.execute("DELETE FROM notifications WHERE user_id = %s", (user_id,))
            else:
                cur.execute(
                    "DELETE FROM notifications WHERE user_id = %s AND id = ANY(%s::uuid[])",
                    (user_id, list(ids)),
                )
            return cur.rowcount

    # ==========================================================
    # History (append-only: no UPDATE or DELETE here)
    # ==========================================================

    def append_history(self, entry: HistoryEntry) -> HistoryEntry:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO transaction_history (id, transaction_id, actor_id, action_type, description, created_at)
                VALUES (%(id)s, %(transaction_id)s, %(actor_id)s, %(action_type)s, %(description)s, %(created_at)s)
                RETURNING *
                """,
                _params(asdict(entry)),
            )
            return HistoryEntry.from_row(cur.fetchone())

    def list_history(self, *, tx_ids: Optional[Iterable[str]] = None, limit: int = 200) -> list[HistoryEntry]:
        with self._cursor() as cur:
            if tx_ids is None:
                cur.execute(
                    "SELECT * FROM transaction_history ORDER BY created_at DESC LIMIT %s",
                    (int(limit),),
                )
            else:
                cur.execute(
                    """
                    SELECT * FROM transaction_history
                    WHERE transaction_id = ANY(%s::uuid[])
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                    (list(tx_ids), int(limit)),
                )
            return [HistoryEntry.from_row(r) for r in cur.fetchall()]

    # ==========================================================
    # Complaints
    # ==========================================================

    def insert_complaint(self, complaint: Complaint) -> Complaint:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO complaints (id, transaction_id, user_id, user_email, role, message, created_at, resolved)
                VALUES (%(id)s, %(transaction_id)s, %(user_id)s, %(user_email)s, %(role)s, %(message)s, %(created_at)s, false)
                RETURNING *
                """,
                _params(asdict(complaint)),
            )
            return Complaint.from_row(cur.fetchone())

    def get_complaint(self, complaint_id: str) -> Optional[Complaint]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM complaints WHERE id = %s", (complaint_id,))
            row = cur.fetchone()
        return Complaint.from_row(row) if row else None

    def list_complaints(
        self, *, resolved: Optional[bool] = None, tx_id: Optional[str] = None
    ) -> list[Complaint]:
        where = ["TRUE"]
        params: list[Any] = []
        if resolved is not None:
            where.append("resolved = %s")
            params.append(bool(resolved))
        if tx_id is not None:
            where.append("transaction_id = %s")
            params.append(tx_id)
        with self._cursor() as cur:
            cur.execute(
                f"SELECT * FROM complaints WHERE {' AND '.join(where)} ORDER BY created_at DESC",
                tuple(params),
            )
            return [Complaint.from_row(r) for r in cur.fetchall()]

    def resolve_complaint(self, complaint_id: str, *, admin_response: str) -> Complaint:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE complaints
                SET resolved = true, admin_response = %s
                WHERE id = %s AND resolved = false
                RETURNING *
                """,
                (admin_response, complaint_id),
            )
            row = cur.fetchone()
            if row is None:
                cur.execute("SELECT * FROM complaints WHERE id = %s", (complaint_id,))
                row = cur.fetchone()
                if row is None:
                    raise NotFoundError("complaint not found", code="COMPLAINT_NOT_FOUND")
            return Complaint.from_row(row)

    # ==========================================================
    # Payout accounts
    # ==========================================================

    def insert_payout_account(self, account: PayoutAccount) -> PayoutAccount:
        data = _params(asdict(account))
        cols = list(data)
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO payout_accounts ({", ".join(cols)})
                VALUES ({", ".join(f"%({c})s" for c in cols)})
                RETURNING *
                """,
                data,
            )
            return PayoutAccount.from_row(cur.fetchone())

    def get_payout_account(self, account_id: str) -> Optional[PayoutAccount]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM payout_accounts WHERE id = %s", (account_id,))
            row = cur.fetchone()
        return PayoutAccount.from_row(row) if row else None

    def list_payout_accounts(self, user_id: str) -> list[PayoutAccount]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM payout_accounts
                WHERE user_id = %s
                ORDER BY is_default DESC, created_at DESC
                """,
                (user_id,),
            )
            return [PayoutAccount.from_row(r) for r in cur.fetchall()]

    def update_payout_account(self, account_id: str, changes: Mapping[str, Any]) -> PayoutAccount:
        check_columns(changes, MUTABLE_PAYOUT_COLUMNS)
        data = _params(changes)
        sets = [f"{c} = %({c})s" for c in data]
        sets.append("updated_at = clock_timestamp()")
        data["_id"] = account_id
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE payout_accounts SET {', '.join(sets)} WHERE id = %(_id)s RETURNING *",
                data,
            )
            row = cur.fetchone()
            if row is None:
                raise NotFoundError("payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")
            return PayoutAccount.from_row(row)

    def delete_payout_account(self, account_id: str) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM payout_accounts WHERE id = %s", (account_id,))
            if cur.rowcount == 0:
                raise NotFoundError("payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")

    def set_default_payout_account(self, user_id: str, account_id: str) -> list[PayoutAccount]:
        # one statement flips every row of the user, so there is never a
        # moment with zero or two defaults
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE payout_accounts
                SET is_default = (id = %(account_id)s),
                    updated_at = clock_timestamp()
                WHERE user_id = %(user_id)s
                  AND EXISTS (
                    SELECT 1 FROM payout_accounts
                    WHERE id = %(account_id)s AND user_id = %(user_id)s
                  )
                """,
                {"account_id": account_id, "user_id": user_id},
            )
            if cur.rowcount == 0:
                raise NotFoundError("payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")
        return self.list_payout_accounts(user_id)

    # ==========================================================
    # Chat
    # ==========================================================

    def insert_message(self, message: ChatMessage) -> ChatMessage:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messages (id, transaction_id, sender_id, sender_email, sender_role, content, created_at, is_deleted)
                VALUES (%(id)s, %(transaction_id)s, %(sender_id)s, %(sender_email)s, %(sender_role)s, %(content)s, %(created_at)s, false)
                RETURNING *
                """,
                _params(asdict(message)),
            )
            return ChatMessage.from_row(cur.fetchone())

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM messages WHERE id = %s", (message_id,))
            row = cur.fetchone()
        return ChatMessage.from_row(row) if row else None

    def list_messages(self, tx_id: str) -> list[ChatMessage]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM messages WHERE transaction_id = %s ORDER BY created_at ASC",
                (tx_id,),
            )
            return [ChatMessage.from_row(r) for r in cur.fetchall()]

    def mark_message_deleted(self, message_id: str) -> ChatMessage:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE messages SET is_deleted = true WHERE id = %s RETURNING *",
                (message_id,),
            )
            row = cur.fetchone()
            if row is None:
                raise NotFoundError("message not found", code="MESSAGE_NOT_FOUND")
            return ChatMessage.from_row(row)

    # ==========================================================
    # Site settings
    # ==========================================================

    def get_site_settings(self, keys: Optional[Iterable[str]] = None) -> dict[str, str]:
        with self._cursor() as cur:
            if keys is None:
                cur.execute("SELECT key, value FROM site_settings")
            else:
                cur.execute(
                    "SELECT key, value FROM site_settings WHERE key = ANY(%s)",
                    (list(keys),),
                )
            return {r["key"]: r["value"] for r in cur.fetchall()}

    def upsert_site_settings(self, values: Mapping[str, str]) -> dict[str, str]:
        with self._cursor() as cur:
            for key, value in values.items():
                cur.execute(
                    """
                    INSERT INTO site_settings (key, value, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (key) DO UPDATE
                    SET value = EXCLUDED.value, updated_at = now()
                    """,
                    (key, str(value)),
                )
        return self.get_site_settings()

    # ==========================================================
    # Roles
    # ==========================================================

    def roles_for(self, user_id: str) -> frozenset[str]:
        with self._cursor() as cur:
            cur.execute("SELECT role FROM user_roles WHERE user_id = %s", (user_id,))
            return frozenset(str(r["role"]) for r in cur.fetchall())

    def admin_ids(self) -> list[str]:
        with self._cursor() as cur:
            cur.execute("SELECT DISTINCT user_id FROM user_roles WHERE role = 'admin' ORDER BY user_id")
            return [str(r["user_id"]) for r in cur.fetchall()]

    # ==========================================================
    # Profiles
    # ==========================================================

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM profiles WHERE id = %s", (user_id,))
            row = cur.fetchone()
            return Profile.from_row(row) if row else None

    def ensure_profile(self, user_id: str, email: str, *, now: datetime) -> Profile:
        # the no-op update makes RETURNING yield the existing row too
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO profiles (id, email, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET id = EXCLUDED.id
                RETURNING *
                """,
                (user_id, email, now, now),
            )
            return Profile.from_row(cur.fetchone())

    def list_profiles(self, *, search: Optional[str] = None, limit: int = 500) -> list[Profile]:
        where = ["TRUE"]
        params: dict[str, Any] = {"limit": int(limit)}
        needle = (search or "").strip()
        if needle:
            where.append("(email ILIKE %(q)s OR full_name ILIKE %(q)s OR phone ILIKE %(q)s)")
            params["q"] = f"%{needle}%"
        sql = f"""
        SELECT * FROM profiles
        WHERE {" AND ".join(where)}
        ORDER BY created_at DESC
        LIMIT %(limit)s
        """
        with self._cursor() as cur:
            cur.execute(sql, params)
            return [Profile.from_row(r) for r in cur.fetchall()]

    def update_profile(self, user_id: str, changes: Mapping[str, Any]) -> Profile:
        check_columns(changes, MUTABLE_PROFILE_COLUMNS)
        data = _params(changes)
        sets = [f"{c} = %({c})s" for c in data]
        sets.append("updated_at = clock_timestamp()")
        data["_id"] = user_id
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE profiles SET {', '.join(sets)} WHERE id = %(_id)s RETURNING *",
                data,
            )
            row = cur.fetchone()
            if row is None:
                raise NotFoundError("user not found", code="USER_NOT_FOUND")
            return Profile.from_row(row)
