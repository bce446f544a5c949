# app/escrow/invites.py
from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional

from app.escrow import fees
from app.escrow.errors import AuthorizationError, InvalidTransition, NotFoundError, StaleStateError, ValidationError
from app.escrow.model import Identity, InviteLink, InviteResolution, Role, Transaction, TransactionStatus
from app.escrow.state_machine import Action, transition
from settings import settings

logger = logging.getLogger("escrow.invites")

VALID = "valid"
INVALID = "invalid"
EXPIRED = "expired"
ALREADY_USED = "already_used"
OWN_LINK = "own_link"


def new_token() -> str:
    return secrets.token_urlsafe(24)


def invite_url(token: str) -> str:
    return f"{settings.APP_BASE_URL.rstrip('/')}/invite/{token}"


def issue(store, tx: Transaction, issuer: Identity, *, now: datetime, ttl_hours: Optional[int] = None) -> InviteLink:
    """
    Mint a fresh single-use link for `tx`. Earlier active links of the same
    transaction are switched off and the new token is copied onto the row.
    """
    if tx.buyer_id != issuer.user_id and not issuer.is_admin:
        raise AuthorizationError("only the buyer can invite a seller", code="NOT_TRANSACTION_BUYER")
    if tx.status != TransactionStatus.PENDING_PAYMENT or tx.seller_id is not None:
        raise InvalidTransition(
            "invite links can only be issued while the deal is waiting for a seller",
            code="INVALID_STATE",
        )

    hours = ttl_hours or settings.INVITE_TTL_HOURS
    link = InviteLink(
        id=str(uuid.uuid4()),
        token=new_token(),
        transaction_id=tx.id,
        created_by=issuer.user_id,
        created_at=now,
        expires_at=now + timedelta(hours=hours),
    )
    saved = store.insert_invite(link)
    logger.info("invite issued tx_id=%s expires_at=%s", tx.id, saved.expires_at.isoformat())
    return saved


def classify(
    link: Optional[InviteLink],
    tx: Optional[Transaction],
    identity: Optional[Identity],
    now: datetime,
) -> str:
    # used beats expired: a consumed link must read as already_used even
    # though redemption also cleared is_active
    if link is None or tx is None:
        return INVALID
    if link.used_by is not None or tx.seller_id is not None:
        return ALREADY_USED
    if not link.is_active or link.expires_at < now:
        return EXPIRED
    if identity is not None and identity.user_id in (link.created_by, tx.buyer_id):
        return OWN_LINK
    return VALID


def resolve(store, token: str, identity: Optional[Identity], *, now: datetime) -> InviteResolution:
    """Classify the link for the invite page. Always read fresh; expiry depends on `now`."""
    link = store.get_invite(token)
    tx = store.get_transaction(link.transaction_id) if link is not None else None
    state = classify(link, tx, identity, now)

    quote = None
    if tx is not None:
        quote = fees.compute_fee(tx.amount, fees.load_fee_config(store))
    return InviteResolution(state=state, link=link, transaction=tx, quote=quote)


def redeem(store, token: str, redeemer: Identity, *, now: datetime) -> tuple[Transaction, InviteLink]:
    """
    Join the redeemer as seller. The store does the claim as one conditional
    write, so of two racing redeemers exactly one gets through.
    """
    link = store.get_invite(token)
    tx = store.get_transaction(link.transaction_id) if link is not None else None
    state = classify(link, tx, redeemer, now)

    if state == INVALID:
        raise NotFoundError("invite link not found", code="INVITE_INVALID")
    if state == ALREADY_USED:
        raise StaleStateError("invite link already used", code="INVITE_ALREADY_USED")
    if state == EXPIRED:
        raise ValidationError("invite link has expired", code="INVITE_EXPIRED")
    if state == OWN_LINK:
        raise ValidationError("you cannot join your own deal as seller", code="INVITE_OWN_LINK")

    transition(tx.status, Action.REDEEM_INVITE, Role.SELLER)

    joined, used = store.redeem_invite(
        token,
        redeemer_id=redeemer.user_id,
        redeemer_email=redeemer.email,
        now=now,
    )
    logger.info("seller joined tx_id=%s", joined.id)
    return joined, used
