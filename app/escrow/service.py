# app/escrow/service.py
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping, Optional

from app.email import client as email_events
from app.email.client import EmailClient
from app.escrow import fees, history, invites, notifications
from app.escrow.errors import (
    AuthorizationError,
    EscrowError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from app.escrow.events import MESSAGE_CREATED, TRANSACTION_DELETED, TRANSACTION_UPDATED, EventBus
from app.escrow.fees import FeeQuote
from app.escrow.model import (
    ChatMessage,
    Complaint,
    HistoryAction,
    HistoryEntry,
    Identity,
    InviteLink,
    InviteResolution,
    Notification,
    NotificationType,
    PayoutAccount,
    PayoutType,
    ProductType,
    Profile,
    Role,
    Transaction,
    TransactionStatus as S,
    UserStatus,
)
from app.escrow.proofs import ProofIntake, ProofUpload
from app.escrow.state_machine import RULES, TERMINAL, Action, allowed_actions, transition
from app.storage.client import StorageClient
from settings import settings

logger = logging.getLogger("escrow")

CENT = Decimal("0.01")

# set once, the first time the transaction enters the status
STATUS_TIMESTAMPS = {
    S.HELD: "paid_at",
    S.PENDING_CONFIRMATION: "delivered_at",
    S.PENDING_RELEASE: "confirmed_at",
    S.RELEASED: "released_at",
}

EDITABLE_FIELDS = frozenset({"deal_title", "deal_description", "amount", "product_type", "seller_phone"})

BANK_FIELDS = ("bank_name", "account_number", "account_name")
CRYPTO_FIELDS = ("crypto_currency", "wallet_address")
PAYOUT_FIELDS = BANK_FIELDS + CRYPTO_FIELDS + ("network",)

DEFAULT_COMPLAINT_RESPONSE = "Resolved by admin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: Any, what: str, code: str = "VALIDATION_FAILED") -> str:
    text = (value or "").strip() if isinstance(value, str) or value is None else str(value).strip()
    if not text:
        raise ValidationError(f"{what} is required", code=code)
    return text


def _parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("amount must be a number", code="INVALID_AMOUNT") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount must be greater than zero", code="INVALID_AMOUNT")
    return amount.quantize(CENT)


def _parse_product_type(value: Any) -> ProductType:
    try:
        return ProductType(value)
    except ValueError as exc:
        raise ValidationError(f"unknown product type {value!r}", code="INVALID_PRODUCT_TYPE") from exc


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note


@dataclass(frozen=True)
class CryptoPayment:
    asset: str
    amount_sent: str
    sender_address: str = ""
    tx_hash: str = ""


@dataclass(frozen=True)
class TransactionView:
    transaction: Transaction
    role: Role
    quote: FeeQuote
    allowed_actions: list[Action]


@dataclass(frozen=True)
class CreatedTransaction:
    transaction: Transaction
    quote: FeeQuote
    invite: Optional[InviteLink] = None
    invite_url: Optional[str] = None


@dataclass(frozen=True)
class _Effects:
    history_action: HistoryAction
    description: str
    title: str
    message: str
    notification_type: NotificationType = NotificationType.INFO
    email_event: Optional[str] = None
    email_extra: dict[str, Any] = field(default_factory=dict)


class EscrowService:
    """
    Every operation of the escrow lifecycle, with the caller passed in
    explicitly as an Identity.

    Status changes go through one path: state machine check, one
    check-and-set update of the row, then the best-effort tail (history,
    notifications, email, bus event). Nothing in the tail can undo the
    update.
    """

    def __init__(
        self,
        store,
        *,
        storage: Optional[StorageClient] = None,
        mailer: Optional[EmailClient] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.bus = bus or EventBus()
        self.mailer = mailer or EmailClient()
        self.proofs = ProofIntake(storage or StorageClient())
        self._clock = clock or _utcnow

    # ==========================================================
    # Helpers
    # ==========================================================

    def _load(self, tx_id: str) -> Transaction:
        tx = self.store.get_transaction(tx_id)
        if tx is None:
            raise NotFoundError("transaction not found", code="TRANSACTION_NOT_FOUND")
        return tx

    def _viewer_role(self, tx: Transaction, identity: Identity) -> Role:
        party = tx.party_role(identity.user_id)
        if party is not None:
            return party
        if identity.is_admin:
            return Role.ADMIN
        raise AuthorizationError("not a party to this transaction", code="NOT_A_PARTY")

    def _role_for(self, tx: Transaction, identity: Optional[Identity], action: Action) -> Role:
        if identity is None:
            return Role.SYSTEM
        allowed = RULES[action].roles if action in RULES else frozenset({Role.ADMIN})
        party = tx.party_role(identity.user_id)
        if party is not None and party in allowed:
            return party
        if identity.is_admin and Role.ADMIN in allowed:
            return Role.ADMIN
        # wrong role: let the state machine produce the rejection
        return self._viewer_role(tx, identity)

    def _require_admin(self, identity: Identity) -> None:
        if not identity.is_admin:
            raise AuthorizationError("admin role required", code="ADMIN_REQUIRED")

    def _plan(
        self,
        identity: Optional[Identity],
        tx_id: str,
        action: Action,
        *,
        override_target: Optional[S] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> tuple[Transaction, Role, Optional[S]]:
        tx = self._load(tx_id)
        if expected_updated_at is not None and expected_updated_at != tx.updated_at:
            raise StaleStateError("transaction changed, reload and retry", code="STALE_STATE")
        role = self._role_for(tx, identity, action)
        new_status = transition(tx.status, action, role, override_target=override_target)
        return tx, role, new_status

    def _commit(
        self,
        tx: Transaction,
        identity: Optional[Identity],
        role: Role,
        new_status: S,
        effects: _Effects,
        *,
        changes: Optional[Mapping[str, Any]] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        now = self._clock()
        update = dict(changes or {})
        update["status"] = new_status
        ts_field = STATUS_TIMESTAMPS.get(new_status)
        if ts_field and getattr(tx, ts_field) is None:
            update[ts_field] = now
        if note:
            update["admin_notes"] = _append_note(tx.admin_notes, note)

        updated = self.store.update_transaction(tx.id, expected_updated_at=tx.updated_at, changes=update)
        logger.info(
            "transaction_status tx_id=%s from=%s to=%s role=%s",
            tx.id,
            tx.status.value,
            new_status.value,
            role.value,
        )
        self._after_write(updated, identity, role, effects, now)
        return updated

    def _after_write(
        self,
        tx: Transaction,
        identity: Optional[Identity],
        role: Role,
        effects: _Effects,
        now: datetime,
    ) -> None:
        actor_id = identity.user_id if identity is not None else None
        history.record(
            self.store,
            transaction_id=tx.id,
            actor_id=actor_id,
            action_type=effects.history_action,
            description=effects.description,
            now=now,
        )
        notifications.fan_out(
            self.store,
            self.bus,
            tx,
            actor_role=role,
            actor_id=actor_id,
            title=effects.title,
            message=effects.message,
            type=effects.notification_type,
            now=now,
        )
        if effects.email_event:
            self._email(effects.email_event, self._email_payload(tx, effects.email_extra))
        self.bus.publish(TRANSACTION_UPDATED, {"transaction_id": tx.id, "status": tx.status.value})

    def _email(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self.mailer.send(event_type, payload)
        except Exception:
            logger.warning("email dispatch failed event_type=%s", event_type, exc_info=True)

    def _email_payload(self, tx: Transaction, extra: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        payload = {
            "id": tx.id,
            "deal_title": tx.deal_title,
            "amount": tx.amount,
            "currency": tx.currency,
            "buyer_email": tx.buyer_email,
            "seller_email": tx.seller_email,
            "status": tx.status.value,
        }
        payload.update(extra or {})
        return payload

    def _quote(self, amount: Decimal) -> FeeQuote:
        return fees.compute_fee(amount, fees.load_fee_config(self.store))

    # ==========================================================
    # Fees
    # ==========================================================

    def quote_fee(self, amount: Any) -> FeeQuote:
        return self._quote(amount)

    def request_fee_negotiation(
        self, identity: Identity, *, deal_title: Optional[str], amount: Any, message: str
    ) -> FeeQuote:
        text = _require_text(message, "message", code="MESSAGE_REQUIRED")
        base = _parse_amount(amount)
        quote = self._quote(base)
        self._email(
            email_events.FEE_NEGOTIATION,
            {
                "deal_title": (deal_title or "").strip() or "New Deal",
                "amount": base,
                "buyer_email": identity.email,
                "negotiation_message": text,
                "service_fee": quote.fee,
                "fee_percent": quote.rate,
                "buyer_total": quote.buyer_total,
            },
        )
        logger.info("fee negotiation requested user_id=%s", identity.user_id)
        return quote

    # ==========================================================
    # Transactions
    # ==========================================================

    def create_transaction(
        self,
        identity: Identity,
        *,
        deal_title: str,
        amount: Any,
        product_type: Any,
        deal_description: Optional[str] = None,
        seller_phone: Optional[str] = None,
        currency: Optional[str] = None,
        issue_invite: bool = True,
    ) -> CreatedTransaction:
        title = _require_text(deal_title, "deal title", code="TITLE_REQUIRED")
        base = _parse_amount(amount)
        ptype = _parse_product_type(product_type)
        quote = self._quote(base)

        now = self._clock()
        tx = Transaction(
            id=str(uuid.uuid4()),
            buyer_id=identity.user_id,
            buyer_email=identity.email,
            deal_title=title,
            deal_description=(deal_description or "").strip() or None,
            amount=base,
            currency=(currency or settings.DEFAULT_CURRENCY).upper(),
            product_type=ptype,
            status=S.PENDING_PAYMENT,
            seller_phone=(seller_phone or "").strip() or None,
            created_at=now,
            updated_at=now,
        )
        tx = self.store.insert_transaction(tx)
        logger.info("transaction_created tx_id=%s amount=%s", tx.id, tx.amount)

        link = None
        url = None
        if issue_invite:
            link = invites.issue(self.store, tx, identity, now=now)
            url = invites.invite_url(link.token)
            tx = self._load(tx.id)

        effects = _Effects(
            history_action=HistoryAction.TRANSACTION_CREATED,
            description=f"Transaction created: {title} ({tx.amount} {tx.currency})",
            title="New transaction",
            message=f"{identity.email} created \"{title}\"",
            email_event=email_events.TRANSACTION_CREATED,
            email_extra={"amount": quote.buyer_total, "base_amount": quote.base_amount, "service_fee": quote.fee},
        )
        self._after_write(tx, identity, Role.BUYER, effects, now)
        return CreatedTransaction(transaction=tx, quote=quote, invite=link, invite_url=url)

    def get_transaction(self, identity: Identity, tx_id: str) -> TransactionView:
        tx = self._load(tx_id)
        role = self._viewer_role(tx, identity)
        actions = allowed_actions(tx.status, role)
        if identity.is_admin and role != Role.ADMIN:
            actions += [a for a in allowed_actions(tx.status, Role.ADMIN) if a not in actions]
        return TransactionView(
            transaction=tx,
            role=role,
            quote=self._quote(tx.amount),
            allowed_actions=actions,
        )

    def list_transactions(
        self,
        identity: Identity,
        *,
        scope: str = "buyer",
        status: Optional[S] = None,
        search: Optional[str] = None,
        limit: int = 200,
    ) -> list[Transaction]:
        if status is not None:
            status = S(status)
        if scope == "buyer":
            return self.store.list_transactions(buyer_id=identity.user_id, status=status, search=search, limit=limit)
        if scope == "seller":
            return self.store.list_transactions(seller_id=identity.user_id, status=status, search=search, limit=limit)
        if scope == "all":
            self._require_admin(identity)
            return self.store.list_transactions(status=status, search=search, limit=limit)
        raise ValidationError(f"unknown scope {scope!r}", code="INVALID_SCOPE")

    def edit_transaction(
        self,
        identity: Identity,
        tx_id: str,
        changes: Mapping[str, Any],
        *,
        expected_updated_at: Optional[datetime] = None,
    ) -> Transaction:
        tx = self._load(tx_id)
        if expected_updated_at is not None and expected_updated_at != tx.updated_at:
            raise StaleStateError("transaction changed, reload and retry", code="STALE_STATE")
        if tx.buyer_id != identity.user_id:
            raise AuthorizationError("only the buyer can edit the deal", code="NOT_TRANSACTION_BUYER")
        if tx.status != S.PENDING_PAYMENT:
            raise ValidationError("deal terms are locked once a seller joins", code="TERMS_LOCKED")

        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"cannot edit {sorted(unknown)}", code="FIELD_NOT_EDITABLE")

        update: dict[str, Any] = {}
        if "deal_title" in changes:
            update["deal_title"] = _require_text(changes["deal_title"], "deal title", code="TITLE_REQUIRED")
        if "amount" in changes:
            update["amount"] = _parse_amount(changes["amount"])
        if "product_type" in changes:
            update["product_type"] = _parse_product_type(changes["product_type"])
        for key in ("deal_description", "seller_phone"):
            if key in changes:
                update[key] = (changes[key] or "").strip() or None
        if not update:
            return tx

        now = self._clock()
        updated = self.store.update_transaction(tx.id, expected_updated_at=tx.updated_at, changes=update)
        history.record(
            self.store,
            transaction_id=tx.id,
            actor_id=identity.user_id,
            action_type=HistoryAction.TRANSACTION_UPDATED,
            description="Deal updated: " + ", ".join(sorted(update)),
            now=now,
        )
        self.bus.publish(TRANSACTION_UPDATED, {"transaction_id": tx.id, "status": updated.status.value})
        return updated

    def delete_transaction(
        self, identity: Identity, tx_id: str, *, expected_updated_at: Optional[datetime] = None
    ) -> None:
        tx, role, _ = self._plan(identity, tx_id, Action.DELETE, expected_updated_at=expected_updated_at)
        self.store.delete_transaction(tx.id, expected_updated_at=tx.updated_at)
        logger.info("transaction_deleted tx_id=%s status=%s", tx.id, tx.status.value)
        self.bus.publish(TRANSACTION_DELETED, {"transaction_id": tx.id})

    # ==========================================================
    # Invites
    # ==========================================================

    def issue_invite(self, identity: Identity, tx_id: str) -> tuple[InviteLink, str]:
        tx = self._load(tx_id)
        now = self._clock()
        link = invites.issue(self.store, tx, identity, now=now)
        history.record(
            self.store,
            transaction_id=tx.id,
            actor_id=identity.user_id,
            action_type=HistoryAction.INVITE_ISSUED,
            description=f"Invite link issued, expires {link.expires_at.isoformat()}",
            now=now,
        )
        return link, invites.invite_url(link.token)

    def resolve_invite(self, token: str, identity: Optional[Identity] = None) -> InviteResolution:
        return invites.resolve(self.store, token, identity, now=self._clock())

    def redeem_invite(self, identity: Identity, token: str) -> Transaction:
        now = self._clock()
        tx, _ = invites.redeem(self.store, token, identity, now=now)
        effects = _Effects(
            history_action=HistoryAction.SELLER_JOINED,
            description=f"Seller {identity.email} joined via invite link",
            title="Seller joined",
            message=f"{identity.email} joined \"{tx.deal_title}\". You can now make payment.",
            notification_type=NotificationType.SUCCESS,
            email_event=email_events.SELLER_JOINED,
        )
        self._after_write(tx, identity, Role.SELLER, effects, now)
        return tx

    # ==========================================================
    # Lifecycle transitions
    # ==========================================================

    def submit_payment(
        self,
        identity: Identity,
        tx_id: str,
        *,
        payment_reference: Optional[str] = None,
        crypto: Optional[CryptoPayment] = None,
        proof: Optional[ProofUpload] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> Transaction:
        tx, role, new_status = self._plan(
            identity, tx_id, Action.SUBMIT_PAYMENT, expected_updated_at=expected_updated_at
        )

        changes: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        if crypto is not None:
            asset = _require_text(crypto.asset, "crypto asset", code="CRYPTO_ASSET_REQUIRED")
            sent = _require_text(crypto.amount_sent, "amount sent", code="CRYPTO_AMOUNT_REQUIRED")
            reference = f"CRYPTO-{asset}-{crypto.tx_hash.strip() or int(time.time() * 1000)}"
            changes["proof_description"] = (
                f"Crypto payment via {asset}. Sender: {crypto.sender_address}. "
                f"Amount: {sent}. TX Hash: {crypto.tx_hash}"
            )
            changes["proof_url"] = None
            extra = {
                "payment_method": asset,
                "crypto_sender": crypto.sender_address,
                "crypto_amount": sent,
                "crypto_tx_hash": crypto.tx_hash,
            }
            event = email_events.CRYPTO_PAYMENT_SUBMITTED
        else:
            reference = _require_text(payment_reference, "payment reference", code="PAYMENT_REFERENCE_REQUIRED")
            extra = {"payment_method": "card"}
            event = email_events.PAYMENT_CONFIRMED

        if proof is not None:
            changes["proof_url"] = self.proofs.accept(tx.id, role, proof, crypto=crypto is not None)
            if proof.description and crypto is None:
                changes["proof_description"] = proof.description.strip()
        changes["payment_reference"] = reference
        extra["payment_reference"] = reference
        if changes.get("proof_url"):
            extra["proof_url"] = changes["proof_url"]

        return self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.PAYMENT,
                description=f"Payment submitted, ref {reference}",
                title="Payment received",
                message=f"Payment for \"{tx.deal_title}\" is held in escrow.",
                notification_type=NotificationType.SUCCESS,
                email_event=event,
                email_extra=extra,
            ),
            changes=changes,
        )

    def mark_delivered(
        self,
        identity: Identity,
        tx_id: str,
        *,
        proof: Optional[ProofUpload] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> Transaction:
        tx, role, new_status = self._plan(
            identity, tx_id, Action.MARK_DELIVERED, expected_updated_at=expected_updated_at
        )
        changes: dict[str, Any] = {}
        if proof is not None:
            changes["proof_url"] = self.proofs.accept(tx.id, role, proof)
            changes["proof_description"] = (proof.description or "").strip() or None
        return self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.STATUS_CHANGE,
                description="Seller marked the deal as delivered" + (" with proof" if proof else ""),
                title="Marked as delivered",
                message=f"The seller delivered \"{tx.deal_title}\". Please confirm receipt.",
                email_event=email_events.DELIVERY_MARKED,
            ),
            changes=changes,
        )

    def confirm_receipt(
        self, identity: Identity, tx_id: str, *, expected_updated_at: Optional[datetime] = None
    ) -> Transaction:
        tx, role, new_status = self._plan(
            identity, tx_id, Action.CONFIRM_RECEIPT, expected_updated_at=expected_updated_at
        )
        return self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.STATUS_CHANGE,
                description="Buyer confirmed receipt",
                title="Receipt confirmed",
                message=f"The buyer confirmed receipt of \"{tx.deal_title}\". Funds are pending release.",
                notification_type=NotificationType.SUCCESS,
                email_event=email_events.BUYER_CONFIRMED,
            ),
        )

    def release_funds(
        self, identity: Identity, tx_id: str, *, expected_updated_at: Optional[datetime] = None
    ) -> Transaction:
        tx, role, new_status = self._plan(
            identity, tx_id, Action.RELEASE_FUNDS, expected_updated_at=expected_updated_at
        )
        return self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.STATUS_CHANGE,
                description="Admin released funds to the seller",
                title="Funds released",
                message=f"Funds for \"{tx.deal_title}\" have been released.",
                notification_type=NotificationType.SUCCESS,
                email_event=email_events.FUNDS_RELEASED,
            ),
        )

    def request_refund(
        self,
        identity: Identity,
        tx_id: str,
        reason: str,
        *,
        expected_updated_at: Optional[datetime] = None,
    ) -> Transaction:
        text = _require_text(reason, "refund reason", code="REASON_REQUIRED")
        tx, role, new_status = self._plan(
            identity, tx_id, Action.REQUEST_REFUND, expected_updated_at=expected_updated_at
        )
        updated = self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.REFUND,
                description=f"Buyer requested a refund: {text}",
                title="Refund requested",
                message=f"The buyer requested a refund on \"{tx.deal_title}\".",
                notification_type=NotificationType.WARNING,
                email_event=email_events.REFUND_REQUESTED,
                email_extra={"reason": text},
            ),
            note=f"Buyer requests refund: {text}",
        )
        self._open_complaint(updated, identity, role, f"REFUND REQUEST: {text}")
        return updated

    def approve_refund(
        self,
        identity: Identity,
        tx_id: str,
        note: Optional[str] = None,
        *,
        expected_updated_at: Optional[datetime] = None,
    ) -> Transaction:
        tx, role, new_status = self._plan(
            identity, tx_id, Action.APPROVE_REFUND, expected_updated_at=expected_updated_at
        )
        text = (note or "").strip() or "Refund approved by admin"
        return self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.REFUND,
                description=f"Refund approved: {text}",
                title="Refund approved",
                message=f"The refund on \"{tx.deal_title}\" was approved. The deal is cancelled.",
                email_event=email_events.REFUND_APPROVED,
            ),
            note=text,
        )

    def deny_refund(
        self,
        identity: Identity,
        tx_id: str,
        note: Optional[str] = None,
        *,
        expected_updated_at: Optional[datetime] = None,
    ) -> Transaction:
        tx, role, new_status = self._plan(
            identity, tx_id, Action.DENY_REFUND, expected_updated_at=expected_updated_at
        )
        text = (note or "").strip() or "Refund denied by admin"
        return self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.REFUND,
                description=f"Refund denied: {text}",
                title="Refund denied",
                message=f"The refund on \"{tx.deal_title}\" was denied. Funds remain held.",
                notification_type=NotificationType.WARNING,
                email_event=email_events.REFUND_DENIED,
            ),
            note=text,
        )

    def file_dispute(
        self,
        identity: Identity,
        tx_id: str,
        reason: str,
        *,
        expected_updated_at: Optional[datetime] = None,
    ) -> Transaction:
        text = _require_text(reason, "dispute reason", code="REASON_REQUIRED")
        tx, role, new_status = self._plan(
            identity, tx_id, Action.FILE_DISPUTE, expected_updated_at=expected_updated_at
        )
        updated = self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.DISPUTE,
                description=f"{role.value.capitalize()} opened a dispute: {text}",
                title="Dispute opened",
                message=f"A dispute was opened on \"{tx.deal_title}\".",
                notification_type=NotificationType.ERROR,
                email_event=email_events.DISPUTE_FILED,
                email_extra={"complaint_from": role.value, "reason": text},
            ),
        )
        self._open_complaint(updated, identity, role, f"DISPUTE: {text}")
        return updated

    def admin_mark_disputed(
        self,
        identity: Identity,
        tx_id: str,
        note: Optional[str] = None,
        *,
        expected_updated_at: Optional[datetime] = None,
    ) -> Transaction:
        tx, role, new_status = self._plan(
            identity, tx_id, Action.MARK_DISPUTED, expected_updated_at=expected_updated_at
        )
        text = (note or "").strip() or "Marked as disputed by admin"
        return self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.DISPUTE,
                description=text,
                title="Deal under dispute",
                message=f"\"{tx.deal_title}\" is under review by an admin.",
                notification_type=NotificationType.WARNING,
            ),
            note=text,
        )

    def move_to_delivery(
        self, identity: Identity, tx_id: str, *, expected_updated_at: Optional[datetime] = None
    ) -> Transaction:
        tx, role, new_status = self._plan(
            identity, tx_id, Action.MOVE_TO_DELIVERY, expected_updated_at=expected_updated_at
        )
        return self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.STATUS_CHANGE,
                description="Admin moved the deal to pending delivery",
                title="Awaiting delivery",
                message=f"\"{tx.deal_title}\" is waiting for the seller to deliver.",
            ),
        )

    def manual_override(
        self,
        identity: Identity,
        tx_id: str,
        target_status: Any,
        note: str,
        *,
        expected_updated_at: Optional[datetime] = None,
    ) -> Transaction:
        text = _require_text(note, "override note", code="NOTE_REQUIRED")
        try:
            target = S(target_status)
        except ValueError as exc:
            raise ValidationError(f"unknown status {target_status!r}", code="INVALID_STATUS") from exc

        tx, role, new_status = self._plan(
            identity,
            tx_id,
            Action.MANUAL_OVERRIDE,
            override_target=target,
            expected_updated_at=expected_updated_at,
        )
        logger.warning(
            "manual_override tx_id=%s from=%s to=%s admin=%s",
            tx.id,
            tx.status.value,
            target.value,
            identity.user_id,
        )
        return self._commit(
            tx,
            identity,
            role,
            new_status,
            _Effects(
                history_action=HistoryAction.OVERRIDE,
                description=f"Admin override {tx.status.value} -> {target.value}: {text}",
                title="Status updated by admin",
                message=f"\"{tx.deal_title}\" is now {target.value.replace('_', ' ')}.",
                notification_type=NotificationType.WARNING,
                email_event=email_events.STATUS_OVERRIDDEN,
                email_extra={"previous_status": tx.status.value, "note": text},
            ),
            note=f"Override to {target.value}: {text}",
        )

    def expire_stale_transactions(self, identity: Optional[Identity] = None) -> list[Transaction]:
        """
        Move deals that never found a seller to expired: still pending_payment,
        no live invite link, and older than the invite lifetime.
        """
        if identity is not None:
            self._require_admin(identity)
        now = self._clock()
        cutoff = now - timedelta(hours=settings.INVITE_TTL_HOURS)

        expired: list[Transaction] = []
        for tx in self.store.list_transactions(status=S.PENDING_PAYMENT, limit=10_000):
            if tx.seller_id is not None or tx.created_at > cutoff:
                continue
            if any(link.is_live(now) for link in self.store.list_invites(tx.id)):
                continue
            try:
                _, role, new_status = self._plan(identity, tx.id, Action.EXPIRE, expected_updated_at=tx.updated_at)
                expired.append(
                    self._commit(
                        tx,
                        identity,
                        role,
                        new_status,
                        _Effects(
                            history_action=HistoryAction.STATUS_CHANGE,
                            description="Expired: no seller joined before the invite lapsed",
                            title="Deal expired",
                            message=f"\"{tx.deal_title}\" expired because no seller joined.",
                            notification_type=NotificationType.WARNING,
                        ),
                    )
                )
            except EscrowError as e:
                # someone acted on it since we listed; leave it alone
                logger.info("expire skipped tx_id=%s code=%s", tx.id, e.code)
        logger.info("expiry sweep done expired=%s", len(expired))
        return expired

    # ==========================================================
    # Proofs
    # ==========================================================

    def attach_proof(self, identity: Identity, tx_id: str, proof: ProofUpload) -> Transaction:
        tx = self._load(tx_id)
        role = tx.party_role(identity.user_id)
        if role is None:
            raise AuthorizationError("only the buyer or seller can upload proof", code="NOT_A_PARTY")
        if tx.status in TERMINAL:
            raise ValidationError("the deal is closed", code="TRANSACTION_CLOSED")

        url = self.proofs.accept(tx.id, role, proof)
        now = self._clock()
        description = (proof.description or "").strip() or None
        # last write wins; stale reads are fine for the evidence fields
        updated = self._update_latest(tx.id, {"proof_url": url, "proof_description": description})
        history.record(
            self.store,
            transaction_id=tx.id,
            actor_id=identity.user_id,
            action_type=HistoryAction.PROOF,
            description=f"{role.value.capitalize()} uploaded proof" + (f": {description}" if description else ""),
            now=now,
        )
        self.bus.publish(TRANSACTION_UPDATED, {"transaction_id": tx.id, "status": updated.status.value})
        return updated

    def _update_latest(self, tx_id: str, changes: Mapping[str, Any], attempts: int = 3) -> Transaction:
        for _ in range(attempts - 1):
            tx = self._load(tx_id)
            try:
                return self.store.update_transaction(tx_id, expected_updated_at=tx.updated_at, changes=changes)
            except StaleStateError:
                continue
        tx = self._load(tx_id)
        return self.store.update_transaction(tx_id, expected_updated_at=tx.updated_at, changes=changes)

    # ==========================================================
    # History
    # ==========================================================

    def list_history(
        self, identity: Identity, tx_id: Optional[str] = None, *, limit: int = 200
    ) -> list[HistoryEntry]:
        if tx_id is not None:
            tx = self._load(tx_id)
            self._viewer_role(tx, identity)
            return self.store.list_history(tx_ids=[tx.id], limit=limit)
        if identity.is_admin:
            return self.store.list_history(limit=limit)
        mine = {t.id for t in self.store.list_transactions(buyer_id=identity.user_id, limit=10_000)}
        mine |= {t.id for t in self.store.list_transactions(seller_id=identity.user_id, limit=10_000)}
        if not mine:
            return []
        return self.store.list_history(tx_ids=sorted(mine), limit=limit)

    # ==========================================================
    # Complaints
    # ==========================================================

    def _open_complaint(self, tx: Transaction, identity: Identity, role: Role, message: str) -> Optional[Complaint]:
        # the status change already committed; a missing ticket is logged, not raised
        try:
            return self.store.insert_complaint(
                Complaint(
                    id=str(uuid.uuid4()),
                    transaction_id=tx.id,
                    user_id=identity.user_id,
                    user_email=identity.email,
                    role=role,
                    message=message,
                    created_at=self._clock(),
                )
            )
        except Exception:
            logger.warning("complaint insert failed tx_id=%s", tx.id, exc_info=True)
            return None

    def file_complaint(self, identity: Identity, tx_id: str, message: str) -> Complaint:
        text = _require_text(message, "complaint", code="MESSAGE_REQUIRED")
        tx = self._load(tx_id)
        role = tx.party_role(identity.user_id)
        if role is None:
            raise AuthorizationError("only the buyer or seller can file a complaint", code="NOT_A_PARTY")
        if tx.status in TERMINAL:
            raise ValidationError("the deal is closed", code="TRANSACTION_CLOSED")

        complaint = self.store.insert_complaint(
            Complaint(
                id=str(uuid.uuid4()),
                transaction_id=tx.id,
                user_id=identity.user_id,
                user_email=identity.email,
                role=role,
                message=text,
                created_at=self._clock(),
            )
        )
        notifications.fan_out(
            self.store,
            self.bus,
            tx,
            actor_role=role,
            actor_id=identity.user_id,
            title="Complaint filed",
            message=f"A complaint was filed on \"{tx.deal_title}\".",
            type=NotificationType.WARNING,
        )
        self._email(
            email_events.COMPLAINT_FILED,
            self._email_payload(tx, {"complaint_from": role.value, "complaint_message": text}),
        )
        return complaint

    def list_complaints(
        self, identity: Identity, *, resolved: Optional[bool] = None, tx_id: Optional[str] = None
    ) -> list[Complaint]:
        self._require_admin(identity)
        return self.store.list_complaints(resolved=resolved, tx_id=tx_id)

    def resolve_complaint(self, identity: Identity, complaint_id: str, response: Optional[str] = None) -> Complaint:
        self._require_admin(identity)
        text = (response or "").strip() or DEFAULT_COMPLAINT_RESPONSE
        complaint = self.store.resolve_complaint(complaint_id, admin_response=text)
        logger.info("complaint resolved complaint_id=%s", complaint_id)
        return complaint

    # ==========================================================
    # Chat
    # ==========================================================

    def post_message(self, identity: Identity, tx_id: str, content: str) -> ChatMessage:
        text = _require_text(content, "message", code="MESSAGE_REQUIRED")
        tx = self._load(tx_id)
        role = self._viewer_role(tx, identity)
        if identity.user_id in tx.muted_ids:
            raise AuthorizationError("you have been muted in this chat", code="SENDER_MUTED")
        profile = self.store.get_profile(identity.user_id)
        if profile is not None and not profile.can_chat and not identity.is_admin:
            raise AuthorizationError("chat is disabled for this account", code="CHAT_DISABLED")

        message = self.store.insert_message(
            ChatMessage(
                id=str(uuid.uuid4()),
                transaction_id=tx.id,
                sender_id=identity.user_id,
                sender_email=identity.email,
                sender_role=role.value,
                content=text,
                created_at=self._clock(),
            )
        )
        self.bus.publish(
            MESSAGE_CREATED,
            {"transaction_id": tx.id, "message_id": message.id, "sender_id": identity.user_id},
        )
        return message

    def list_messages(self, identity: Identity, tx_id: str) -> list[ChatMessage]:
        tx = self._load(tx_id)
        role = self._viewer_role(tx, identity)
        rows = self.store.list_messages(tx.id)
        if role == Role.ADMIN or identity.is_admin:
            return rows
        return [m for m in rows if not m.is_deleted]

    def delete_message(self, identity: Identity, message_id: str) -> ChatMessage:
        self._require_admin(identity)
        if self.store.get_message(message_id) is None:
            raise NotFoundError("message not found", code="MESSAGE_NOT_FOUND")
        return self.store.mark_message_deleted(message_id)

    def _set_muted(self, identity: Identity, tx_id: str, user_id: str, muted: bool) -> Transaction:
        self._require_admin(identity)
        target = _require_text(user_id, "user id", code="USER_REQUIRED")
        tx = self._load(tx_id)
        current = list(tx.muted_ids)
        if muted and target not in current:
            current.append(target)
        elif not muted and target in current:
            current.remove(target)
        else:
            return tx

        updated = self.store.update_transaction(
            tx.id, expected_updated_at=tx.updated_at, changes={"muted_ids": tuple(current)}
        )
        history.record(
            self.store,
            transaction_id=tx.id,
            actor_id=identity.user_id,
            action_type=HistoryAction.TRANSACTION_UPDATED,
            description=f"Chat {'muted' if muted else 'unmuted'} for {target}",
            now=self._clock(),
        )
        return updated

    def mute_user(self, identity: Identity, tx_id: str, user_id: str) -> Transaction:
        return self._set_muted(identity, tx_id, user_id, True)

    def unmute_user(self, identity: Identity, tx_id: str, user_id: str) -> Transaction:
        return self._set_muted(identity, tx_id, user_id, False)

    # ==========================================================
    # Notifications (own rows only)
    # ==========================================================

    def list_notifications(self, identity: Identity, *, unread_only: bool = False, limit: int = 100) -> list[Notification]:
        return notifications.list_for_user(self.store, identity, unread_only=unread_only, limit=limit)

    def mark_notification_read(self, identity: Identity, notification_id: str) -> int:
        return notifications.mark_read(self.store, identity, notification_id)

    def mark_all_notifications_read(self, identity: Identity) -> int:
        return notifications.mark_all_read(self.store, identity)

    def delete_notification(self, identity: Identity, notification_id: str) -> int:
        return notifications.delete(self.store, identity, notification_id)

    def clear_notifications(self, identity: Identity) -> int:
        return notifications.clear_all(self.store, identity)

    # ==========================================================
    # Payout accounts
    # ==========================================================

    def _payout_fields(self, payout_type: PayoutType, details: Mapping[str, Any]) -> dict[str, Any]:
        unknown = set(details) - set(PAYOUT_FIELDS)
        if unknown:
            raise ValidationError(f"unknown payout fields {sorted(unknown)}", code="INVALID_PAYOUT_FIELDS")
        values = {k: ((details.get(k) or "").strip() or None) for k in PAYOUT_FIELDS}
        required = BANK_FIELDS if payout_type == PayoutType.BANK else CRYPTO_FIELDS
        missing = [k for k in required if not values[k]]
        if missing:
            raise ValidationError(f"missing {', '.join(missing)}", code="PAYOUT_FIELDS_REQUIRED")
        # only keep the fields of the chosen type
        keep = required + (("network",) if payout_type == PayoutType.CRYPTO else ())
        return {k: (values[k] if k in keep else None) for k in PAYOUT_FIELDS}

    def _own_account(self, identity: Identity, account_id: str) -> PayoutAccount:
        account = self.store.get_payout_account(account_id)
        if account is None:
            raise NotFoundError("payout account not found", code="PAYOUT_ACCOUNT_NOT_FOUND")
        if account.user_id != identity.user_id:
            raise AuthorizationError("not your payout account", code="NOT_ACCOUNT_OWNER")
        return account

    def create_payout_account(self, identity: Identity, payout_type: Any, details: Mapping[str, Any]) -> PayoutAccount:
        try:
            ptype = PayoutType(payout_type)
        except ValueError as exc:
            raise ValidationError(f"unknown payout type {payout_type!r}", code="INVALID_PAYOUT_TYPE") from exc
        now = self._clock()
        account = PayoutAccount(
            id=str(uuid.uuid4()),
            user_id=identity.user_id,
            payout_type=ptype,
            created_at=now,
            updated_at=now,
            **self._payout_fields(ptype, details),
        )
        return self.store.insert_payout_account(account)

    def update_payout_account(
        self,
        identity: Identity,
        account_id: str,
        details: Mapping[str, Any],
        payout_type: Any = None,
    ) -> PayoutAccount:
        account = self._own_account(identity, account_id)
        try:
            ptype = PayoutType(payout_type) if payout_type is not None else account.payout_type
        except ValueError as exc:
            raise ValidationError(f"unknown payout type {payout_type!r}", code="INVALID_PAYOUT_TYPE") from exc
        merged = {k: getattr(account, k) for k in PAYOUT_FIELDS}
        merged.update(details)
        changes = self._payout_fields(ptype, merged)
        changes["payout_type"] = ptype
        return self.store.update_payout_account(account.id, changes)

    def list_payout_accounts(self, identity: Identity) -> list[PayoutAccount]:
        return self.store.list_payout_accounts(identity.user_id)

    def delete_payout_account(self, identity: Identity, account_id: str) -> None:
        account = self._own_account(identity, account_id)
        self.store.delete_payout_account(account.id)

    def set_default_payout_account(self, identity: Identity, account_id: str) -> list[PayoutAccount]:
        account = self._own_account(identity, account_id)
        return self.store.set_default_payout_account(identity.user_id, account.id)

    # ==========================================================
    # Profiles and moderation
    # ==========================================================

    def ensure_profile(self, identity: Identity) -> Profile:
        return self.store.ensure_profile(identity.user_id, identity.email, now=self._clock())

    def get_own_profile(self, identity: Identity) -> Profile:
        return self.ensure_profile(identity)

    def update_own_profile(self, identity: Identity, details: Mapping[str, Any]) -> Profile:
        current = self.ensure_profile(identity)
        changes = {}
        for key in ("full_name", "phone"):
            if key in details:
                changes[key] = (details[key] or "").strip() or None
        if not changes:
            return current
        return self.store.update_profile(identity.user_id, changes)

    def list_users(self, identity: Identity, search: Optional[str] = None) -> list[Profile]:
        self._require_admin(identity)
        return self.store.list_profiles(search=search)

    def _moderate(self, identity: Identity, user_id: str, changes: Mapping[str, Any]) -> Profile:
        self._require_admin(identity)
        if user_id == identity.user_id:
            raise ValidationError("admins cannot moderate their own account", code="CANNOT_MODERATE_SELF")
        if self.store.get_profile(user_id) is None:
            raise NotFoundError("user not found", code="USER_NOT_FOUND")
        return self.store.update_profile(user_id, changes)

    def suspend_user(self, identity: Identity, user_id: str, reason: str) -> Profile:
        text = _require_text(reason, "suspension reason", code="REASON_REQUIRED")
        profile = self._moderate(
            identity, user_id, {"status": UserStatus.SUSPENDED, "suspension_reason": text}
        )
        logger.info("user suspended user=%s by=%s", user_id, identity.user_id)
        return profile

    def reactivate_user(self, identity: Identity, user_id: str) -> Profile:
        profile = self._moderate(
            identity, user_id, {"status": UserStatus.ACTIVE, "suspension_reason": None}
        )
        logger.info("user reactivated user=%s by=%s", user_id, identity.user_id)
        return profile

    def set_chat_permission(self, identity: Identity, user_id: str, can_chat: bool) -> Profile:
        profile = self._moderate(identity, user_id, {"can_chat": bool(can_chat)})
        logger.info("chat permission user=%s can_chat=%s by=%s", user_id, profile.can_chat, identity.user_id)
        return profile

    # ==========================================================
    # Site settings
    # ==========================================================

    def get_site_settings(self, identity: Identity) -> dict[str, str]:
        self._require_admin(identity)
        return self.store.get_site_settings()

    def update_site_settings(self, identity: Identity, values: Mapping[str, Any]) -> dict[str, str]:
        self._require_admin(identity)
        current = self.store.get_site_settings()
        changed = {k: str(v) for k, v in values.items() if current.get(k) != str(v)}
        for key in set(changed) & set(fees.FEE_SETTING_KEYS):
            try:
                value = Decimal(changed[key].strip())
            except InvalidOperation as exc:
                raise ValidationError(f"{key} must be a number", code="INVALID_SETTING") from exc
            if not value.is_finite() or value <= 0:
                raise ValidationError(f"{key} must be greater than zero", code="INVALID_SETTING")
        if not changed:
            return current
        logger.info("site settings updated keys=%s by=%s", sorted(changed), identity.user_id)
        return self.store.upsert_site_settings(changed)


def role_names(roles: Iterable[str]) -> frozenset[str]:
    return frozenset(str(r).strip().lower() for r in roles if r)
