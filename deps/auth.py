# deps/auth.py
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from app.escrow.model import Identity
from app.escrow.service import EscrowService, role_names
from deps.services import get_service
from security import decode_token
from services.observability import set_actor_id

bearer = HTTPBearer(auto_error=False)


async def _identity_from_payload(payload: dict, service: EscrowService) -> Identity:
    user_id = str(payload["sub"])
    # async so the contextvar lands in the request task and reaches the
    # threadpool the endpoint runs in
    set_actor_id(user_id)
    roles = await run_in_threadpool(service.store.roles_for, user_id)
    identity = Identity(user_id=user_id, email=str(payload.get("email") or ""), roles=role_names(roles))
    profile = await run_in_threadpool(service.ensure_profile, identity)
    if profile.is_suspended:
        raise HTTPException(status_code=403, detail="USER_SUSPENDED")
    return identity


async def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    service: EscrowService = Depends(get_service),
) -> Identity:
    if not creds:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    # must be "Bearer"
    if (creds.scheme or "").lower() != "bearer":
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    payload = decode_token(creds.credentials)
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")
    return await _identity_from_payload(payload, service)


async def get_optional_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    service: EscrowService = Depends(get_service),
) -> Optional[Identity]:
    """For pages anonymous visitors may open, like the invite page."""
    if not creds or (creds.scheme or "").lower() != "bearer":
        return None
    payload = decode_token(creds.credentials)
    if not payload.get("sub"):
        return None
    return await _identity_from_payload(payload, service)
