# app/escrow/notifications.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from app.escrow.errors import AuthorizationError, NotFoundError
from app.escrow.events import NOTIFICATION_CREATED, EventBus
from app.escrow.model import Identity, Notification, NotificationType, Role, Transaction

logger = logging.getLogger("escrow.notifications")

_DASHBOARD_PREFIX = {
    Role.BUYER: "/buyer/transactions",
    Role.SELLER: "/seller/transactions",
    Role.ADMIN: "/admin/transactions",
}


def deep_link(recipient_role: Role, transaction_id: str) -> str:
    return f"{_DASHBOARD_PREFIX[Role(recipient_role)]}/{transaction_id}"


def compute_recipients(
    tx: Transaction,
    actor_role: Role,
    actor_id: Optional[str],
    admin_ids: Iterable[str],
) -> list[tuple[str, Role]]:
    """
    Who hears about an event, and as which role.

    buyer -> seller + admins, seller -> buyer + admins, admin/system -> buyer + seller.
    The actor is never notified and each user appears once; when a user holds
    two roles on the transaction the first match wins.
    """
    actor_role = Role(actor_role)
    candidates: list[tuple[Optional[str], Role]] = []

    if actor_role == Role.BUYER:
        candidates.append((tx.seller_id, Role.SELLER))
        candidates.extend((a, Role.ADMIN) for a in admin_ids)
    elif actor_role == Role.SELLER:
        candidates.append((tx.buyer_id, Role.BUYER))
        candidates.extend((a, Role.ADMIN) for a in admin_ids)
    else:
        candidates.append((tx.buyer_id, Role.BUYER))
        candidates.append((tx.seller_id, Role.SELLER))

    seen: set[str] = set()
    out: list[tuple[str, Role]] = []
    for user_id, role in candidates:
        if not user_id or user_id == actor_id or user_id in seen:
            continue
        seen.add(user_id)
        out.append((user_id, role))
    return out


def fan_out(
    store,
    bus: Optional[EventBus],
    tx: Transaction,
    *,
    actor_role: Role,
    actor_id: Optional[str],
    title: str,
    message: str,
    type: NotificationType = NotificationType.INFO,
    now: Optional[datetime] = None,
) -> list[Notification]:
    """Insert one notification per recipient. Best effort; failures are logged."""
    try:
        recipients = compute_recipients(tx, actor_role, actor_id, store.admin_ids())
        created_at = now or datetime.now(timezone.utc)
        rows = [
            Notification(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=title,
                message=message,
                type=NotificationType(type),
                link=deep_link(role, tx.id),
                created_at=created_at,
            )
            for user_id, role in recipients
        ]
        if not rows:
            return []
        inserted = store.insert_notifications(rows)
    except Exception:
        logger.warning("notification fan-out failed tx_id=%s title=%s", tx.id, title, exc_info=True)
        return []

    if bus is not None:
        for n in inserted:
            bus.publish(
                NOTIFICATION_CREATED,
                {"user_id": n.user_id, "notification_id": n.id, "transaction_id": tx.id},
            )
    logger.info("notifications sent tx_id=%s count=%s", tx.id, len(inserted))
    return inserted


# ==========================================================
# Recipient-side operations (own rows only)
# ==========================================================

def list_for_user(store, identity: Identity, *, unread_only: bool = False, limit: int = 100) -> list[Notification]:
    return store.list_notifications(identity.user_id, unread_only=unread_only, limit=limit)


def _owned(store, identity: Identity, notification_id: str) -> Notification:
    n = store.get_notification(notification_id)
    if n is None:
        raise NotFoundError("notification not found", code="NOTIFICATION_NOT_FOUND")
    if n.user_id != identity.user_id:
        raise AuthorizationError("not your notification", code="NOT_NOTIFICATION_OWNER")
    return n


def mark_read(store, identity: Identity, notification_id: str) -> int:
    _owned(store, identity, notification_id)
    return store.mark_notifications_read(identity.user_id, [notification_id])


def mark_all_read(store, identity: Identity) -> int:
    return store.mark_notifications_read(identity.user_id)


def delete(store, identity: Identity, notification_id: str) -> int:
    _owned(store, identity, notification_id)
    return store.delete_notifications(identity.user_id, [notification_id])


def clear_all(store, identity: Identity) -> int:
    return store.delete_notifications(identity.user_id)
