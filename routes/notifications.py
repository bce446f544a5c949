# routes/notifications.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query

from app.escrow.model import Identity
from app.escrow.service import EscrowService
from deps.auth import get_current_user
from deps.services import get_service
from schemas import CountResponse, NotificationOut

router = APIRouter(prefix="/v1/notifications", tags=["notifications"])


@router.get("", response_model=List[NotificationOut])
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    rows = service.list_notifications(user, unread_only=unread_only, limit=limit)
    return [NotificationOut.model_validate(n) for n in rows]


@router.post("/read-all", response_model=CountResponse)
def mark_all_read(
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return CountResponse(count=service.mark_all_notifications_read(user))


@router.post("/{notification_id}/read", response_model=CountResponse)
def mark_read(
    notification_id: str,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return CountResponse(count=service.mark_notification_read(user, notification_id))


@router.delete("", response_model=CountResponse)
def clear_all(
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return CountResponse(count=service.clear_notifications(user))


@router.delete("/{notification_id}", response_model=CountResponse)
def delete_notification(
    notification_id: str,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return CountResponse(count=service.delete_notification(user, notification_id))
