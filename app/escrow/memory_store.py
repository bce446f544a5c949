# app/escrow/memory_store.py
from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence

from app.escrow.errors import NotFoundError, StaleStateError
from app.escrow.model import (
    ChatMessage,
    Complaint,
    HistoryEntry,
    InviteLink,
    Notification,
    PayoutAccount,
    Profile,
    Role,
    Transaction,
    TransactionStatus,
)
from app.escrow.store import (
    MUTABLE_PAYOUT_COLUMNS,
    MUTABLE_PROFILE_COLUMNS,
    MUTABLE_TRANSACTION_COLUMNS,
    check_columns,
)

_TICK = timedelta(microseconds=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryEscrowStore:
    """
    Process-local EscrowStore used for local development and tests.

    Every method runs under one lock, so the conditional writes behave like
    the single-statement updates of the Postgres store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._transactions: dict[str, Transaction] = {}
        self._invites: dict[str, InviteLink] = {}
        self._notifications: dict[str, Notification] = {}
        self._history: list[HistoryEntry] = []
        self._complaints: dict[str, Complaint] = {}
        self._payout_accounts: dict[str, PayoutAccount] = {}
        self._messages: dict[str, ChatMessage] = {}
        self._site_settings: dict[str, str] = {}
        self._roles: dict[str, set[str]] = {}
        self._profiles: dict[str, Profile] = {}

    def _next_updated_at(self, previous: datetime) -> datetime:
        # updated_at must move forward on every write or CAS can't see it
        now = _utcnow()
        return now if now > previous else previous + _TICK

    # ==========================================================
    # Transactions
    # ==========================================================

    def insert_transaction(self, tx: Transaction) -> Transaction:
        with self._lock:
            if tx.id in self._transactions:
                raise ValueError(f"duplicate transaction id {tx.id}")
            self._transactions[tx.id] = tx
            return tx

    def get_transaction(self, tx_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._transactions.get(tx_id)

    def list_transactions(
        self,
        *,
        buyer_id: Optional[str] = None,
        seller_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        search: Optional[str] = None,
        limit: int = 200,
    ) -> list[Transaction]:
        needle = (search or "").strip().lower()
        with self._lock:
            rows = list(self._transactions.values())
        out = []
        for tx in rows:
            if buyer_id is not None and tx.buyer_id != buyer_id:
                continue
            if seller_id is not None and tx.seller_id != seller_id:
                continue
            if status is not None and tx.status != TransactionStatus(status):
                continue
            if needle:
                haystack = " ".join(
                    v or ""
                    for v in (
                        tx.id,
                        tx.deal_title,
                        tx.buyer_email,
                        tx.seller_email,
                        tx.seller_phone,
                        tx.payment_reference,
                    )
                ).lower()
                if needle not in haystack:
                    continue
            out.append(tx)
        out.sort(key=lambda t: t.created_at, reverse=True)
        return out[:limit]

    def update_transaction(
        self, tx_id: str, *, expected_updated_at: datetime, changes: Mapping[str, Any]
    ) -> Transaction:
        check_columns(changes, MUTABLE_TRANSACTION_COLUMNS)
        with self._lock:
            current = self._transactions.get(tx_id)
            if current is None:
                raise NotFoundError("transaction not found", code="TRANSACTION_NOT_FOUND")
            if current.updated_at != expected_updated_at:
                raise StaleStateError("transaction changed, reload and retry", code="STALE_STATE")
            data = dict(changes)
            if "muted_ids" in data:
                data["muted_ids"] = tuple(data["muted_ids"])
            updated = replace(current, updated_at=self._next_updated_at(current.updated_at), **data)
            self._transactions[tx_id] = updated
            return updated

    def delete_transaction(self, tx_id: str, *, expected_updated_at: datetime) -> None:
        with self._lock:
            current = self._transactions.get(tx_id)
            if current is None:
                raise NotFoundError("transaction not found", code="TRANSACTION_NOT_FOUND")
            if current.updated_at != expected_updated_at:
                raise StaleStateError("transaction changed, reload and retry", code="STALE_STATE")
            del self._transactions[tx_id]
            for token, link in list(self._invites.items()):
                if link.transaction_id == tx_id:
                    del self._invites[token]
            for mid, msg in list(self._messages.items()):
                if msg.transaction_id == tx_id:
                    del self._messages[mid]
            for cid, complaint in list(self._complaints.items()):
                if complaint.transaction_id == tx_id:
                    del self._complaints[cid]

    # ==========================================================
    # Invite links
    # ==========================================================

    def insert_invite(self, link: InviteLink) -> InviteLink:
        with self._lock:
            tx = self._transactions.get(link.transaction_id)
            if tx is None:
                raise NotFoundError("transaction not found", code="TRANSACTION_NOT_FOUND")
            for token, other in list(self._invites.items()):
                if other.transaction_id == link.transaction_id and other.is_active:
                    self._invites[token] = replace(other, is_active=False)
            self._invites[link.token] = link
            self._transactions[tx.id] = replace(
                tx, invite_token=link.token, updated_at=self._next_updated_at(tx.updated_at)
            )
            return link

    def get_invite(self, token: str) -> Optional[InviteLink]:
        with self._lock:
            return self._invites.get(token)

    def list_invites(self, tx_id: str) -> list[InviteLink]:
        with self._lock:
            links = [l for l in self._invites.values() if l.transaction_id == tx_id]
        return sorted(links, key=lambda l: l.created_at, reverse=True)

    def redeem_invite(
        self, token: str, *, redeemer_id: str, redeemer_email: str, now: datetime
    ) -> tuple[Transaction, InviteLink]:
        with self._lock:
            link = self._invites.get(token)
            if link is None:
                raise NotFoundError("invite link not found", code="INVITE_INVALID")
            if not link.is_live(now):
                raise StaleStateError("invite link already used", code="INVITE_ALREADY_USED")
            tx = self._transactions.get(link.transaction_id)
            if tx is None or tx.seller_id is not None or tx.status != TransactionStatus.PENDING_PAYMENT:
                raise StaleStateError("invite link already used", code="INVITE_ALREADY_USED")

            new_link = replace(link, used_by=redeemer_id, used_at=now, is_active=False)
            new_tx = replace(
                tx,
                seller_id=redeemer_id,
                seller_email=redeemer_email,
                status=TransactionStatus.SELLER_JOINED,
                updated_at=self._next_updated_at(tx.updated_at),
            )
            self._invites[token] = new_link
            self._transactions[tx.id] = new_tx
            return new_tx, new_link

    # ==========================================================
    # Notifications
    # ==========================================================

    def insert_notifications(self, items: Sequence[Notification]) -> list[Notification]:
        with self._lock:
            for n in items:
                self._notifications[n.id] = n
        return list(items)

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._lock:
            return self._notifications.get(notification_id)

    def list_notifications(
        self, user_id: str, *, unread_only: bool = False, limit: int = 100
    ) -> list[Notification]:
        with self._lock:
            rows = [
                n
                for n in self._notifications.values()
                if n.user_id == user_id and not (unread_only and n.read)
            ]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return rows[:limit]

    def mark_notifications_read(self, user_id: str, ids: Optional[Iterable[str]] = None) -> int:
        wanted = None if ids is None else set(ids)
        count = 0
        with self._lock:
            for nid, n in list(self._notifications.items()):
                if n.user_id != user_id or n.read:
                    continue
                if wanted is not None and nid not in wanted:
                    continue
                self._notifications[nid] = replace(n, read=True)
                count += 1
        return count

    def delete_notifications(self, user_id: str, ids: Optional[Iterable[str]] = None) -> int:
        wanted = None if ids is None else set(ids)
        count = 0
        with self._lock:
            for nid, n in list(self._notifications.items()):
                if n.user_id != user_id:
                    continue
                if wanted is not None and nid not in wanted:
                    continue
                del self._notifications[nid]
                count += 1
        return count

    # ==========================================================
    # History (append-only)
    # ==========================================================

    def append_history(self, entry: HistoryEntry) -> HistoryEntry:
        with self._lock:
            self._history.append(entry)
        return entry

    def list_history(self, *, tx_ids: Optional[Iterable[str]] = None, limit: int = 200) -> list[HistoryEntry]:
        wanted = None if tx_ids is None else set(tx_ids)
        with self._lock:
            rows = [h for h in self._history if wanted is None or h.transaction_id in wanted]
        # newest first, insertion order breaks ties
        rows = list(reversed(rows))
        rows.sort(key=lambda h: h.created_at, reverse=True)
        return rows[:limit]

    # ==========================================================
    # Complaints
    # ==========================================================

    def insert_complaint(self, complaint: Complaint) -> Complaint:
        with self._lock:
            self._complaints[complaint.id] = complaint
        return complaint

    def get_complaint(self, complaint_id: str) -> Optional[Complaint]:
        with self._lock:
            return self._complaints.get(complaint_id)

    def list_complaints(
        self, *, resolved: Optional[bool] = None, tx_id: Optional[str] = None
    ) -> list[Complaint]:
        with self._lock:
            rows = [
                c
                for c in self._complaints.values()
                if (resolved is None or c.resolved == resolved)
                and (tx_id is None or c.transaction_id == tx_id)
            ]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return rows

    def resolve_complaint(self, complaint_id: str, *, admin_response: str) -> Complaint:
        with self._lock:
            current = self._complaints.get(complaint_id)
            if current is None:
                raise NotFoundError("complaint not found", code="COMPLAINT_NOT_FOUND")
            if current.resolved:
                return current
            updated = replace(current, resolved=True, admin_response=admin_response)
            self._complaints[complaint_id] = updated
            return updated

    # ==========================================================
    # Payout accounts
    # ==========================================================

    def insert_payout_account(self, account: PayoutAccount) -> PayoutAccount:
        with self._lock:
            self._payout_accounts[account.id] = account
        return account

    def get_payout_account(self, account_id: str) -> Optional[PayoutAccount]:
        with self._lock:
            return self._payout_accounts.get(account_id)

    def list_payout_accounts(self, user_id: str) -> list[PayoutAccount]:
        with self._lock:
            rows = [a for a in self._payout_accounts.values() if a.user_id == user_id]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        rows.sort(key=lambda a: not a.is_default)
        return rows

    def update_payout_account(self, account_id: str, changes: Mapping[str, Any]) -> PayoutAccount:
        check_columns(changes, MUTABLE_PAYOUT_COLUMNS)
        with self._lock:
            current = self._payout_accounts.get(account_id)
            if current is None:
                raise NotFoundError("payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")
            updated = replace(current, updated_at=self._next_updated_at(current.updated_at), **dict(changes))
            self._payout_accounts[account_id] = updated
            return updated

    def delete_payout_account(self, account_id: str) -> None:
        with self._lock:
            if self._payout_accounts.pop(account_id, None) is None:
                raise NotFoundError("payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")

    def set_default_payout_account(self, user_id: str, account_id: str) -> list[PayoutAccount]:
        with self._lock:
            target = self._payout_accounts.get(account_id)
            if target is None or target.user_id != user_id:
                raise NotFoundError("payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")
            for aid, acct in list(self._payout_accounts.items()):
                if acct.user_id != user_id:
                    continue
                want = aid == account_id
                if acct.is_default != want:
                    self._payout_accounts[aid] = replace(
                        acct, is_default=want, updated_at=self._next_updated_at(acct.updated_at)
                    )
            return self.list_payout_accounts(user_id)

    # ==========================================================
    # Chat
    # ==========================================================

    def insert_message(self, message: ChatMessage) -> ChatMessage:
        with self._lock:
            self._messages[message.id] = message
        return message

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        with self._lock:
            return self._messages.get(message_id)

    def list_messages(self, tx_id: str) -> list[ChatMessage]:
        with self._lock:
            rows = [m for m in self._messages.values() if m.transaction_id == tx_id]
        rows.sort(key=lambda m: m.created_at)
        return rows

    def mark_message_deleted(self, message_id: str) -> ChatMessage:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                raise NotFoundError("message not found", code="MESSAGE_NOT_FOUND")
            updated = replace(current, is_deleted=True)
            self._messages[message_id] = updated
            return updated

    # ==========================================================
    # Site settings
    # ==========================================================

    def get_site_settings(self, keys: Optional[Iterable[str]] = None) -> dict[str, str]:
        with self._lock:
            if keys is None:
                return dict(self._site_settings)
            return {k: self._site_settings[k] for k in keys if k in self._site_settings}

    def upsert_site_settings(self, values: Mapping[str, str]) -> dict[str, str]:
        with self._lock:
            for k, v in values.items():
                self._site_settings[k] = str(v)
            return dict(self._site_settings)

    # ==========================================================
    # Roles
    # ==========================================================

    def grant_role(self, user_id: str, role: str) -> None:
        with self._lock:
            self._roles.setdefault(user_id, set()).add(str(Role(role).value))

    def roles_for(self, user_id: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._roles.get(user_id, ()))

    def admin_ids(self) -> list[str]:
        with self._lock:
            return sorted(uid for uid, roles in self._roles.items() if Role.ADMIN.value in roles)

    # ==========================================================
    # Profiles
    # ==========================================================

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._lock:
            return self._profiles.get(user_id)

    def ensure_profile(self, user_id: str, email: str, *, now: datetime) -> Profile:
        with self._lock:
            current = self._profiles.get(user_id)
            if current is None:
                current = Profile(id=user_id, email=email, created_at=now, updated_at=now)
                self._profiles[user_id] = current
            return current

    def list_profiles(self, *, search: Optional[str] = None, limit: int = 500) -> list[Profile]:
        needle = (search or "").strip().lower()
        with self._lock:
            rows = list(self._profiles.values())
        if needle:
            rows = [
                p
                for p in rows
                if any(needle in (value or "").lower() for value in (p.email, p.full_name, p.phone))
            ]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return rows[:limit]

    def update_profile(self, user_id: str, changes: Mapping[str, Any]) -> Profile:
        check_columns(changes, MUTABLE_PROFILE_COLUMNS)
        with self._lock:
            current = self._profiles.get(user_id)
            if current is None:
                raise NotFoundError("user not found", code="USER_NOT_FOUND")
            updated = replace(current, updated_at=self._next_updated_at(current.updated_at), **dict(changes))
            self._profiles[user_id] = updated
            return updated
