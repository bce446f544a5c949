# schemas.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.escrow.model import (
    NotificationType,
    PayoutType,
    ProductType,
    Role,
    TransactionStatus,
    UserStatus,
)

InviteState = Literal["valid", "invalid", "expired", "already_used", "own_link"]


class _FromAttrs(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# -------- FEES --------
class FeeQuoteOut(BaseModel):
    base_amount: Decimal
    rate_percent: Decimal
    fee: Decimal
    buyer_total: Decimal


class FeeNegotiationRequest(BaseModel):
    deal_title: Optional[str] = None
    amount: Decimal = Field(gt=0)
    message: str = Field(min_length=1, max_length=2000)


# -------- TRANSACTIONS --------
class TransactionOut(_FromAttrs):
    id: str
    buyer_id: str
    buyer_email: str
    seller_id: Optional[str] = None
    seller_email: str = ""
    seller_phone: Optional[str] = None
    deal_title: str
    deal_description: Optional[str] = None
    amount: Decimal
    currency: str
    product_type: ProductType
    status: TransactionStatus
    payment_reference: Optional[str] = None
    proof_url: Optional[str] = None
    proof_description: Optional[str] = None
    admin_notes: Optional[str] = None
    muted_ids: List[str] = []
    invite_token: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None


class TransactionCreateRequest(BaseModel):
    deal_title: str = Field(min_length=1, max_length=200)
    amount: Decimal = Field(gt=0)
    product_type: ProductType
    deal_description: Optional[str] = Field(default=None, max_length=5000)
    seller_phone: Optional[str] = Field(default=None, max_length=32)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    issue_invite: bool = True


class InviteOut(BaseModel):
    token: str
    url: str
    expires_at: datetime


class TransactionCreateResponse(BaseModel):
    transaction: TransactionOut
    quote: FeeQuoteOut
    invite: Optional[InviteOut] = None


class TransactionDetailResponse(BaseModel):
    transaction: TransactionOut
    role: Role
    quote: FeeQuoteOut
    allowed_actions: List[str]


class TransactionEditRequest(BaseModel):
    deal_title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    deal_description: Optional[str] = Field(default=None, max_length=5000)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    product_type: Optional[ProductType] = None
    seller_phone: Optional[str] = Field(default=None, max_length=32)
    expected_updated_at: Optional[datetime] = None


class TransitionRequest(BaseModel):
    expected_updated_at: Optional[datetime] = None


class ReasonRequest(TransitionRequest):
    reason: str = Field(min_length=1, max_length=2000)


class NoteRequest(TransitionRequest):
    note: Optional[str] = Field(default=None, max_length=2000)


class OverrideRequest(TransitionRequest):
    target_status: TransactionStatus
    note: str = Field(min_length=1, max_length=2000)


class ExpireSweepResponse(BaseModel):
    expired: List[TransactionOut]


# -------- INVITES --------
class InviteResolutionOut(BaseModel):
    state: InviteState
    transaction: Optional[TransactionOut] = None
    quote: Optional[FeeQuoteOut] = None
    expires_at: Optional[datetime] = None


# -------- HISTORY --------
class HistoryOut(_FromAttrs):
    id: str
    transaction_id: str
    actor_id: Optional[str] = None
    action_type: str
    description: str
    created_at: datetime


# -------- COMPLAINTS --------
class ComplaintRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)


class ComplaintOut(_FromAttrs):
    id: str
    transaction_id: str
    user_id: str
    user_email: str
    role: Role
    message: str
    resolved: bool
    admin_response: Optional[str] = None
    created_at: datetime


class ResolveComplaintRequest(BaseModel):
    response: Optional[str] = Field(default=None, max_length=2000)


# -------- CHAT --------
class MessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4000)


class MessageOut(_FromAttrs):
    id: str
    transaction_id: str
    sender_id: str
    sender_email: str
    sender_role: str
    content: str
    is_deleted: bool
    created_at: datetime


class MuteRequest(BaseModel):
    user_id: str = Field(min_length=1)


# -------- NOTIFICATIONS --------
class NotificationOut(_FromAttrs):
    id: str
    user_id: str
    title: str
    message: str
    type: NotificationType
    link: Optional[str] = None
    read: bool
    created_at: datetime


class CountResponse(BaseModel):
    count: int


# -------- PAYOUT ACCOUNTS --------
class PayoutAccountIn(BaseModel):
    payout_type: PayoutType
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    crypto_currency: Optional[str] = None
    wallet_address: Optional[str] = None
    network: Optional[str] = None

    def details(self) -> Dict[str, Optional[str]]:
        return self.model_dump(exclude={"payout_type"})


class PayoutAccountOut(_FromAttrs):
    id: str
    user_id: str
    payout_type: PayoutType
    is_default: bool
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    crypto_currency: Optional[str] = None
    wallet_address: Optional[str] = None
    network: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# -------- SITE SETTINGS --------
class SiteSettingsUpdate(BaseModel):
    values: Dict[str, str]


class SiteSettingsOut(BaseModel):
    values: Dict[str, str]


# -------- PROFILES --------
class ProfileOut(_FromAttrs):
    id: str
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    status: UserStatus
    suspension_reason: Optional[str] = None
    can_chat: bool
    created_at: datetime
    updated_at: datetime


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=40)


class SuspendRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class ChatPermissionRequest(BaseModel):
    can_chat: bool
