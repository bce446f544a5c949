# app/escrow/store.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

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

# Columns a caller may change through update_transaction. Identity, buyer and
# created_at are fixed at insert time.
MUTABLE_TRANSACTION_COLUMNS = frozenset(
    {
        "deal_title",
        "deal_description",
        "amount",
        "product_type",
        "status",
        "seller_phone",
        "payment_reference",
        "proof_url",
        "proof_description",
        "admin_notes",
        "muted_ids",
        "invite_token",
        "paid_at",
        "delivered_at",
        "confirmed_at",
        "released_at",
    }
)

MUTABLE_PAYOUT_COLUMNS = frozenset(
    {
        "payout_type",
        "bank_name",
        "account_number",
        "account_name",
        "crypto_currency",
        "wallet_address",
        "network",
    }
)

MUTABLE_PROFILE_COLUMNS = frozenset({"full_name", "phone", "status", "suspension_reason", "can_chat"})


def check_columns(changes: Mapping[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"not updatable: {sorted(unknown)}")


class EscrowStore(Protocol):
    """
    Persistence boundary for the escrow core.

    Implementations must provide the three conditional writes as single
    atomic operations: update_transaction (check-and-set on updated_at),
    redeem_invite (used_by IS NULL) and set_default_payout_account.
    History rows are append-only.
    """

    # transactions
    def insert_transaction(self, tx: Transaction) -> Transaction: ...
    def get_transaction(self, tx_id: str) -> Optional[Transaction]: ...
    def list_transactions(
        self,
        *,
        buyer_id: Optional[str] = None,
        seller_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        search: Optional[str] = None,
        limit: int = 200,
    ) -> list[Transaction]: ...
    def update_transaction(
        self, tx_id: str, *, expected_updated_at: datetime, changes: Mapping[str, Any]
    ) -> Transaction: ...
    def delete_transaction(self, tx_id: str, *, expected_updated_at: datetime) -> None: ...

    # invite links
    def insert_invite(self, link: InviteLink) -> InviteLink: ...
    def get_invite(self, token: str) -> Optional[InviteLink]: ...
    def list_invites(self, tx_id: str) -> list[InviteLink]: ...
    def redeem_invite(
        self, token: str, *, redeemer_id: str, redeemer_email: str, now: datetime
    ) -> tuple[Transaction, InviteLink]: ...

    # notifications
    def insert_notifications(self, items: Sequence[Notification]) -> list[Notification]: ...
    def get_notification(self, notification_id: str) -> Optional[Notification]: ...
    def list_notifications(
        self, user_id: str, *, unread_only: bool = False, limit: int = 100
    ) -> list[Notification]: ...
    def mark_notifications_read(self, user_id: str, ids: Optional[Iterable[str]] = None) -> int: ...
    def delete_notifications(self, user_id: str, ids: Optional[Iterable[str]] = None) -> int: ...

    # history
    def append_history(self, entry: HistoryEntry) -> HistoryEntry: ...
    def list_history(self, *, tx_ids: Optional[Iterable[str]] = None, limit: int = 200) -> list[HistoryEntry]: ...

    # complaints
    def insert_complaint(self, complaint: Complaint) -> Complaint: ...
    def get_complaint(self, complaint_id: str) -> Optional[Complaint]: ...
    def list_complaints(
        self, *, resolved: Optional[bool] = None, tx_id: Optional[str] = None
    ) -> list[Complaint]: ...
    def resolve_complaint(self, complaint_id: str, *, admin_response: str) -> Complaint: ...

    # payout accounts
    def insert_payout_account(self, account: PayoutAccount) -> PayoutAccount: ...
    def get_payout_account(self, account_id: str) -> Optional[PayoutAccount]: ...
    def list_payout_accounts(self, user_id: str) -> list[PayoutAccount]: ...
    def update_payout_account(self, account_id: str, changes: Mapping[str, Any]) -> PayoutAccount: ...
    def delete_payout_account(self, account_id: str) -> None: ...
    def set_default_payout_account(self, user_id: str, account_id: str) -> list[PayoutAccount]: ...

    # chat
    def insert_message(self, message: ChatMessage) -> ChatMessage: ...
    def get_message(self, message_id: str) -> Optional[ChatMessage]: ...
    def list_messages(self, tx_id: str) -> list[ChatMessage]: ...
    def mark_message_deleted(self, message_id: str) -> ChatMessage: ...

    # site settings
    def get_site_settings(self, keys: Optional[Iterable[str]] = None) -> dict[str, str]: ...
    def upsert_site_settings(self, values: Mapping[str, str]) -> dict[str, str]: ...

    # roles
    def roles_for(self, user_id: str) -> frozenset[str]: ...
    def admin_ids(self) -> list[str]: ...

    # profiles
    def get_profile(self, user_id: str) -> Optional[Profile]: ...
    def ensure_profile(self, user_id: str, email: str, *, now: datetime) -> Profile: ...
    def list_profiles(self, *, search: Optional[str] = None, limit: int = 500) -> list[Profile]: ...
    def update_profile(self, user_id: str, changes: Mapping[str, Any]) -> Profile: ...
