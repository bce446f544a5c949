# routes/profile.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from app.escrow.model import Identity
from app.escrow.service import EscrowService
from deps.auth import get_current_user
from deps.services import get_service
from schemas import ProfileOut, ProfileUpdate

router = APIRouter(prefix="/v1/me", tags=["profile"])


@router.get("/profile", response_model=ProfileOut)
def get_profile(
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    return ProfileOut.model_validate(service.get_own_profile(user))


@router.patch("/profile", response_model=ProfileOut)
def update_profile(
    req: ProfileUpdate,
    user: Identity = Depends(get_current_user),
    service: EscrowService = Depends(get_service),
):
    # only fields the client sent; an explicit null clears the value
    details = req.model_dump(exclude_unset=True)
    return ProfileOut.model_validate(service.update_own_profile(user, details))
