# routes/transactions.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile

from app.escrow.errors import ValidationError
from app.escrow.model import Identity, TransactionStatus
from app.escrow.service import CryptoPayment, EscrowService
from deps.auth import get_current_user
from deps.services import get_service
from routes._convert import proof_upload, quote_out, tx_out
from schemas import (
    ComplaintOut,
    ComplaintRequest,
    HistoryOut,
    InviteOut,
    MessageOut,
    MessageRequest,
    ReasonRequest,
    TransactionCreateRequest,
    TransactionCreateResponse,
    TransactionDetailResponse,
    TransactionEditRequest,
    TransactionOut,
    TransitionRequest,
)

logger = logging.getLogger("escrow")
router = APIRouter(prefix="/v1/transactions", tags=["transactions"])


@router.post("", response_model=TransactionCreateResponse, status_code=201)
def create_transaction(
    req: TransactionCreateRequest,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    created = service.create_transaction(
        user,
        deal_title=req.deal_title,
        amount=req.amount,
        product_type=req.product_type,
        deal_description=req.deal_description,
        seller_phone=req.seller_phone,
        currency=req.currency,
        issue_invite=req.issue_invite,
    )
    invite = None
    if created.invite is not None:
        invite = InviteOut(token=created.invite.token, url=created.invite_url, expires_at=created.invite.expires_at)
    return TransactionCreateResponse(
        transaction=tx_out(created.transaction),
        quote=quote_out(created.quote),
        invite=invite,
    )


@router.get("", response_model=List[TransactionOut])
def list_transactions(
    scope: Literal["buyer", "seller", "all"] = Query("buyer"),
    status: Optional[TransactionStatus] = Query(None),
    q: Optional[str] = Query(None, max_length=200),
    limit: int = Query(200, ge=1, le=1000),
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    rows = service.list_transactions(user, scope=scope, status=status, search=q, limit=limit)
    return [tx_out(t) for t in rows]


@router.get("/{tx_id}", response_model=TransactionDetailResponse)
def get_transaction(
    tx_id: str,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    view = service.get_transaction(user, tx_id)
    return TransactionDetailResponse(
        transaction=tx_out(view.transaction),
        role=view.role,
        quote=quote_out(view.quote),
        allowed_actions=[a.value for a in view.allowed_actions],
    )


@router.patch("/{tx_id}", response_model=TransactionOut)
def edit_transaction(
    tx_id: str,
    req: TransactionEditRequest,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    changes = req.model_dump(exclude_unset=True, exclude={"expected_updated_at"})
    tx = service.edit_transaction(user, tx_id, changes, expected_updated_at=req.expected_updated_at)
    return tx_out(tx)


@router.delete("/{tx_id}", status_code=204)
def delete_transaction(
    tx_id: str,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    service.delete_transaction(user, tx_id)
    return Response(status_code=204)


@router.post("/{tx_id}/invite", response_model=InviteOut, status_code=201)
def issue_invite(
    tx_id: str,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    link, url = service.issue_invite(user, tx_id)
    return InviteOut(token=link.token, url=url, expires_at=link.expires_at)


# -------- lifecycle --------

@router.post("/{tx_id}/pay", response_model=TransactionOut)
def submit_payment(
    tx_id: str,
    method: Literal["card", "crypto"] = Form("card"),
    payment_reference: Optional[str] = Form(None),
    crypto_asset: Optional[str] = Form(None),
    crypto_amount_sent: Optional[str] = Form(None),
    crypto_sender_address: Optional[str] = Form(None),
    crypto_tx_hash: Optional[str] = Form(None),
    proof_description: Optional[str] = Form(None),
    expected_updated_at: Optional[datetime] = Form(None),
    proof: Optional[UploadFile] = File(None),
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    crypto = None
    if method == "crypto":
        crypto = CryptoPayment(
            asset=crypto_asset or "",
            amount_sent=crypto_amount_sent or "",
            sender_address=crypto_sender_address or "",
            tx_hash=crypto_tx_hash or "",
        )
    tx = service.submit_payment(
        user,
        tx_id,
        payment_reference=payment_reference,
        crypto=crypto,
        proof=proof_upload(proof, proof_description),
        expected_updated_at=expected_updated_at,
    )
    return tx_out(tx)


@router.post("/{tx_id}/deliver", response_model=TransactionOut)
def mark_delivered(
    tx_id: str,
    proof_description: Optional[str] = Form(None),
    expected_updated_at: Optional[datetime] = Form(None),
    proof: Optional[UploadFile] = File(None),
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    tx = service.mark_delivered(
        user,
        tx_id,
        proof=proof_upload(proof, proof_description),
        expected_updated_at=expected_updated_at,
    )
    return tx_out(tx)


@router.post("/{tx_id}/confirm", response_model=TransactionOut)
def confirm_receipt(
    tx_id: str,
    req: Optional[TransitionRequest] = None,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    expected = req.expected_updated_at if req else None
    return tx_out(service.confirm_receipt(user, tx_id, expected_updated_at=expected))


@router.post("/{tx_id}/refund-request", response_model=TransactionOut)
def request_refund(
    tx_id: str,
    req: ReasonRequest,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    tx = service.request_refund(user, tx_id, req.reason, expected_updated_at=req.expected_updated_at)
    return tx_out(tx)


@router.post("/{tx_id}/dispute", response_model=TransactionOut)
def file_dispute(
    tx_id: str,
    req: ReasonRequest,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    tx = service.file_dispute(user, tx_id, req.reason, expected_updated_at=req.expected_updated_at)
    return tx_out(tx)


# -------- evidence, complaints, history --------

@router.post("/{tx_id}/proof", response_model=TransactionOut)
def attach_proof(
    tx_id: str,
    proof: UploadFile = File(...),
    proof_description: Optional[str] = Form(None),
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    upload = proof_upload(proof, proof_description)
    if upload is None:
        raise ValidationError("proof file is required", code="PROOF_EMPTY")
    return tx_out(service.attach_proof(user, tx_id, upload))


@router.post("/{tx_id}/complaints", response_model=ComplaintOut, status_code=201)
def file_complaint(
    tx_id: str,
    req: ComplaintRequest,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return ComplaintOut.model_validate(service.file_complaint(user, tx_id, req.message))


@router.get("/{tx_id}/history", response_model=List[HistoryOut])
def transaction_history(
    tx_id: str,
    limit: int = Query(200, ge=1, le=1000),
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return [HistoryOut.model_validate(h) for h in service.list_history(user, tx_id, limit=limit)]


# -------- chat --------

@router.get("/{tx_id}/messages", response_model=List[MessageOut])
def list_messages(
    tx_id: str,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return [MessageOut.model_validate(m) for m in service.list_messages(user, tx_id)]


@router.post("/{tx_id}/messages", response_model=MessageOut, status_code=201)
def post_message(
    tx_id: str,
    req: MessageRequest,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return MessageOut.model_validate(service.post_message(user, tx_id, req.content))
