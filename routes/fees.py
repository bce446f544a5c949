# routes/fees.py
from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from app.escrow.model import Identity
from app.escrow.service import EscrowService
from deps.auth import get_current_user
from deps.services import get_service
from routes._convert import quote_out
from schemas import FeeNegotiationRequest, FeeQuoteOut

router = APIRouter(prefix="/v1/fees", tags=["fees"])


@router.get("/quote", response_model=FeeQuoteOut)
def fee_quote(
    amount: Decimal = Query(..., ge=0),
    service: EscrowService = Depends(get_service),
):
    # rates are read on every call; admins may have changed them
    return quote_out(service.quote_fee(amount))


@router.post("/negotiate", response_model=FeeQuoteOut, status_code=202)
def negotiate_fee(
    req: FeeNegotiationRequest,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    quote = service.request_fee_negotiation(
        user,
        deal_title=req.deal_title,
        amount=req.amount,
        message=req.message,
    )
    return quote_out(quote)
