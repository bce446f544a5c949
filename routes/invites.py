# routes/invites.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from app.escrow.model import Identity
from app.escrow.service import EscrowService
from deps.auth import get_current_user, get_optional_user
from deps.services import get_service
from routes._convert import quote_out, tx_out
from schemas import InviteResolutionOut, TransactionOut

router = APIRouter(prefix="/v1/invites", tags=["invites"])


@router.get("/{token}", response_model=InviteResolutionOut)
def resolve_invite(
    token: str,
    user: Optional[Identity] = Depends(get_optional_user),
    service: EscrowService = Depends(get_service),
):
    res = service.resolve_invite(token, user)
    if res.state == "invalid":
        return InviteResolutionOut(state=res.state)
    return InviteResolutionOut(
        state=res.state,
        transaction=tx_out(res.transaction) if res.transaction else None,
        quote=quote_out(res.quote),
        expires_at=res.link.expires_at if res.link else None,
    )


@router.post("/{token}/redeem", response_model=TransactionOut)
def redeem_invite(
    token: str,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return tx_out(service.redeem_invite(user, token))
