# app/escrow/model.py
from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional


class TransactionStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    SELLER_JOINED = "seller_joined"
    HELD = "held"
    PENDING_DELIVERY = "pending_delivery"
    PENDING_CONFIRMATION = "pending_confirmation"
    PENDING_RELEASE = "pending_release"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUND_REQUESTED = "refund_requested"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ProductType(str, Enum):
    PHYSICAL_PRODUCT = "physical_product"
    DIGITAL_PRODUCT = "digital_product"
    SERVICE = "service"


class Role(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class HistoryAction(str, Enum):
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    STATUS_CHANGE = "status_change"
    PAYMENT = "payment"
    SELLER_JOINED = "seller_joined"
    DISPUTE = "dispute"
    REFUND = "refund"
    PROOF = "proof"
    OVERRIDE = "override"
    INVITE_ISSUED = "invite_issued"


class PayoutType(str, Enum):
    BANK = "bank"
    CRYPTO = "crypto"


@dataclass(frozen=True)
class Identity:
    """Who is calling. Built once per request from the verified token."""

    user_id: str
    email: str
    roles: frozenset[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN.value in self.roles


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class Transaction:
    id: str
    buyer_id: str
    buyer_email: str
    deal_title: str
    amount: Decimal
    product_type: ProductType
    status: TransactionStatus
    created_at: datetime
    updated_at: datetime
    currency: str = "NGN"
    deal_description: Optional[str] = None
    seller_id: Optional[str] = None
    seller_email: str = ""
    seller_phone: Optional[str] = None
    payment_reference: Optional[str] = None
    proof_url: Optional[str] = None
    proof_description: Optional[str] = None
    admin_notes: Optional[str] = None
    muted_ids: tuple[str, ...] = ()
    invite_token: Optional[str] = None
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Transaction":
        names = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in names}
        data["id"] = str(row["id"])
        data["buyer_id"] = str(row["buyer_id"])
        data["seller_id"] = _opt_str(row.get("seller_id"))
        data["amount"] = Decimal(str(row["amount"]))
        data["product_type"] = ProductType(row["product_type"])
        data["status"] = TransactionStatus(row["status"])
        data["seller_email"] = row.get("seller_email") or ""
        data["currency"] = row.get("currency") or "NGN"
        data["muted_ids"] = tuple(str(m) for m in (row.get("muted_ids") or ()))
        return cls(**data)

    def party_role(self, user_id: str) -> Optional[Role]:
        if user_id == self.buyer_id:
            return Role.BUYER
        if self.seller_id and user_id == self.seller_id:
            return Role.SELLER
        return None


@dataclass(frozen=True)
class InviteLink:
    id: str
    token: str
    transaction_id: str
    created_by: str
    created_at: datetime
    expires_at: datetime
    used_by: Optional[str] = None
    used_at: Optional[datetime] = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "InviteLink":
        return cls(
            id=str(row["id"]),
            token=row["token"],
            transaction_id=str(row["transaction_id"]),
            created_by=str(row["created_by"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            used_by=_opt_str(row.get("used_by")),
            used_at=row.get("used_at"),
            is_active=bool(row.get("is_active")),
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.used_by is None and self.expires_at >= now


@dataclass(frozen=True)
class Notification:
    id: str
    user_id: str
    title: str
    message: str
    type: NotificationType
    created_at: datetime
    link: Optional[str] = None
    read: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Notification":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row["title"],
            message=row["message"],
            type=NotificationType(row.get("type") or "info"),
            created_at=row["created_at"],
            link=row.get("link"),
            read=bool(row.get("read")),
        )


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    transaction_id: str
    actor_id: Optional[str]
    action_type: str
    description: str
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "HistoryEntry":
        return cls(
            id=str(row["id"]),
            transaction_id=str(row["transaction_id"]),
            actor_id=_opt_str(row.get("actor_id")),
            action_type=row["action_type"],
            description=row["description"],
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class Complaint:
    id: str
    transaction_id: str
    user_id: str
    user_email: str
    role: Role
    message: str
    created_at: datetime
    resolved: bool = False
    admin_response: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Complaint":
        return cls(
            id=str(row["id"]),
            transaction_id=str(row["transaction_id"]),
            user_id=str(row["user_id"]),
            user_email=row["user_email"],
            role=Role(row["role"]),
            message=row["message"],
            created_at=row["created_at"],
            resolved=bool(row.get("resolved")),
            admin_response=row.get("admin_response"),
        )


@dataclass(frozen=True)
class PayoutAccount:
    id: str
    user_id: str
    payout_type: PayoutType
    created_at: datetime
    updated_at: datetime
    is_default: bool = False
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    crypto_currency: Optional[str] = None
    wallet_address: Optional[str] = None
    network: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PayoutAccount":
        names = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in names}
        data["id"] = str(row["id"])
        data["user_id"] = str(row["user_id"])
        data["payout_type"] = PayoutType(row["payout_type"])
        data["is_default"] = bool(row.get("is_default"))
        return cls(**data)


@dataclass(frozen=True)
class ChatMessage:
    id: str
    transaction_id: str
    sender_id: str
    sender_email: str
    sender_role: str
    content: str
    created_at: datetime
    is_deleted: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ChatMessage":
        return cls(
            id=str(row["id"]),
            transaction_id=str(row["transaction_id"]),
            sender_id=str(row["sender_id"]),
            sender_email=row["sender_email"],
            sender_role=row["sender_role"],
            content=row["content"],
            created_at=row["created_at"],
            is_deleted=bool(row.get("is_deleted")),
        )


@dataclass(frozen=True)
class InviteResolution:
    state: str  # valid | invalid | expired | already_used | own_link
    link: Optional[InviteLink] = None
    transaction: Optional[Transaction] = None
    quote: Any = None  # FeeQuote for the invite page


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


@dataclass(frozen=True)
class Profile:
    id: str
    email: str
    created_at: datetime
    updated_at: datetime
    full_name: Optional[str] = None
    phone: Optional[str] = None
    status: UserStatus = UserStatus.ACTIVE
    suspension_reason: Optional[str] = None
    can_chat: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        names = {f.name for f in fields(cls)}
        data = {k: v for k, v in row.items() if k in names}
        data["id"] = str(row["id"])
        data["email"] = row.get("email") or ""
        data["status"] = UserStatus(row.get("status") or "active")
        data["can_chat"] = row.get("can_chat") is not False
        return cls(**data)

    @property
    def is_suspended(self) -> bool:
        return self.status == UserStatus.SUSPENDED
