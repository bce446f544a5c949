# routes/payout_accounts.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Response

from app.escrow.model import Identity
from app.escrow.service import EscrowService
from deps.auth import get_current_user
from deps.services import get_service
from schemas import PayoutAccountIn, PayoutAccountOut

router = APIRouter(prefix="/v1/payout-accounts", tags=["payout-accounts"])


@router.get("", response_model=List[PayoutAccountOut])
def list_accounts(
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return [PayoutAccountOut.model_validate(a) for a in service.list_payout_accounts(user)]


@router.post("", response_model=PayoutAccountOut, status_code=201)
def create_account(
    req: PayoutAccountIn,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    account = service.create_payout_account(user, req.payout_type, req.details())
    return PayoutAccountOut.model_validate(account)


@router.put("/{account_id}", response_model=PayoutAccountOut)
def update_account(
    account_id: str,
    req: PayoutAccountIn,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    account = service.update_payout_account(user, account_id, req.details(), payout_type=req.payout_type)
    return PayoutAccountOut.model_validate(account)


@router.post("/{account_id}/default", response_model=List[PayoutAccountOut])
def set_default(
    account_id: str,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return [PayoutAccountOut.model_validate(a) for a in service.set_default_payout_account(user, account_id)]


@router.delete("/{account_id}", status_code=204)
def delete_account(
    account_id: str,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    service.delete_payout_account(user, account_id)
    return Response(status_code=204)
