# routes/admin.py
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.escrow.model import Identity
from app.escrow.service import EscrowService
from deps.admin import require_admin
from deps.services import get_service
from routes._convert import tx_out
from schemas import (
    ComplaintOut,
    ExpireSweepResponse,
    HistoryOut,
    MessageOut,
    MuteRequest,
    NoteRequest,
    ChatPermissionRequest,
    OverrideRequest,
    ProfileOut,
    ResolveComplaintRequest,
    SiteSettingsOut,
    SiteSettingsUpdate,
    SuspendRequest,
    TransactionOut,
    TransitionRequest,
)

logger = logging.getLogger("escrow")
router = APIRouter(prefix="/v1/admin", tags=["admin"])


# -------- transitions --------

@router.post("/transactions/{tx_id}/release", response_model=TransactionOut)
def release_funds(
    tx_id: str,
    req: Optional[TransitionRequest] = None,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    expected = req.expected_updated_at if req else None
    return tx_out(service.release_funds(admin, tx_id, expected_updated_at=expected))


@router.post("/transactions/{tx_id}/refund/approve", response_model=TransactionOut)
def approve_refund(
    tx_id: str,
    req: Optional[NoteRequest] = None,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    req = req or NoteRequest()
    return tx_out(service.approve_refund(admin, tx_id, req.note, expected_updated_at=req.expected_updated_at))


@router.post("/transactions/{tx_id}/refund/deny", response_model=TransactionOut)
def deny_refund(
    tx_id: str,
    req: Optional[NoteRequest] = None,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    req = req or NoteRequest()
    return tx_out(service.deny_refund(admin, tx_id, req.note, expected_updated_at=req.expected_updated_at))


@router.post("/transactions/{tx_id}/dispute", response_model=TransactionOut)
def mark_disputed(
    tx_id: str,
    req: Optional[NoteRequest] = None,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    req = req or NoteRequest()
    return tx_out(service.admin_mark_disputed(admin, tx_id, req.note, expected_updated_at=req.expected_updated_at))


@router.post("/transactions/{tx_id}/move-to-delivery", response_model=TransactionOut)
def move_to_delivery(
    tx_id: str,
    req: Optional[TransitionRequest] = None,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    expected = req.expected_updated_at if req else None
    return tx_out(service.move_to_delivery(admin, tx_id, expected_updated_at=expected))


@router.post("/transactions/{tx_id}/override", response_model=TransactionOut)
def manual_override(
    tx_id: str,
    req: OverrideRequest,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    tx = service.manual_override(
        admin,
        tx_id,
        req.target_status,
        req.note,
        expected_updated_at=req.expected_updated_at,
    )
    return tx_out(tx)


@router.post("/transactions/expire-stale", response_model=ExpireSweepResponse)
def expire_stale(
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    expired = service.expire_stale_transactions(admin)
    return ExpireSweepResponse(expired=[tx_out(t) for t in expired])


# -------- chat moderation --------

@router.post("/transactions/{tx_id}/mute", response_model=TransactionOut)
def mute_user(
    tx_id: str,
    req: MuteRequest,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return tx_out(service.mute_user(admin, tx_id, req.user_id))


@router.post("/transactions/{tx_id}/unmute", response_model=TransactionOut)
def unmute_user(
    tx_id: str,
    req: MuteRequest,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return tx_out(service.unmute_user(admin, tx_id, req.user_id))


@router.delete("/messages/{message_id}", response_model=MessageOut)
def delete_message(
    message_id: str,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return MessageOut.model_validate(service.delete_message(admin, message_id))


# -------- complaints --------

@router.get("/complaints", response_model=List[ComplaintOut])
def list_complaints(
    resolved: Optional[bool] = Query(None),
    transaction_id: Optional[str] = Query(None),
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    rows = service.list_complaints(admin, resolved=resolved, tx_id=transaction_id)
    return [ComplaintOut.model_validate(c) for c in rows]


@router.post("/complaints/{complaint_id}/resolve", response_model=ComplaintOut)
def resolve_complaint(
    complaint_id: str,
    req: Optional[ResolveComplaintRequest] = None,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    response = req.response if req else None
    return ComplaintOut.model_validate(service.resolve_complaint(admin, complaint_id, response))


# -------- users --------

@router.get("/users", response_model=List[ProfileOut])
def list_users(
    q: Optional[str] = Query(None, max_length=200),
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return [ProfileOut.model_validate(p) for p in service.list_users(admin, search=q)]


@router.post("/users/{user_id}/suspend", response_model=ProfileOut)
def suspend_user(
    user_id: str,
    req: SuspendRequest,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return ProfileOut.model_validate(service.suspend_user(admin, user_id, req.reason))


@router.post("/users/{user_id}/reactivate", response_model=ProfileOut)
def reactivate_user(
    user_id: str,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return ProfileOut.model_validate(service.reactivate_user(admin, user_id))


@router.post("/users/{user_id}/chat", response_model=ProfileOut)
def set_chat_permission(
    user_id: str,
    req: ChatPermissionRequest,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return ProfileOut.model_validate(service.set_chat_permission(admin, user_id, req.can_chat))


# -------- settings + audit --------

@router.get("/settings", response_model=SiteSettingsOut)
def get_settings(
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return SiteSettingsOut(values=service.get_site_settings(admin))


@router.put("/settings", response_model=SiteSettingsOut)
def update_settings(
    req: SiteSettingsUpdate,
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return SiteSettingsOut(values=service.update_site_settings(admin, req.values))


@router.get("/history", response_model=List[HistoryOut])
def all_history(
    limit: int = Query(200, ge=1, le=1000),
    admin: Identity = Depends(require_admin),
    service: EscrowService = Depends(get_service),
):
    return [HistoryOut.model_validate(h) for h in service.list_history(admin, limit=limit)]
