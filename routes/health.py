from __future__ import annotations

import os

from fastapi import APIRouter, Depends

from app.escrow.service import EscrowService
from deps.services import get_service
from settings import settings

router = APIRouter(tags=["health"])


def _check_store(service: EscrowService) -> tuple[bool, str | None]:
    try:
        service.store.get_site_settings([])
        return True, None
    except Exception as exc:
        return False, type(exc).__name__


def _resolve_env() -> str:
    return (os.getenv("ENVIRONMENT") or os.getenv("ENV") or "").strip()


def _resolve_git_sha() -> str | None:
    return (
        (os.getenv("GIT_SHA") or "").strip()
        or (os.getenv("FLY_IMAGE_REF") or "").strip()
        or None
    )


@router.get("/healthz")
def healthz(service: EscrowService = Depends(get_service)):
    db_ok, db_error = _check_store(service)
    return {
        "ok": True,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "store": settings.STORE_BACKEND,
        "db_ok": db_ok,
        "db_error": db_error,
    }


@router.get("/health")
def health():
    return {
        "ok": True,
        "env": _resolve_env(),
        "git_sha": _resolve_git_sha(),
    }
