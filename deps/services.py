# deps/services.py
from __future__ import annotations

import logging
from functools import lru_cache

from app.escrow.memory_store import InMemoryEscrowStore
from app.escrow.pg_store import PostgresEscrowStore
from app.escrow.service import EscrowService
from settings import settings

logger = logging.getLogger("escrow")


def build_store():
    if settings.STORE_BACKEND == "memory":
        logger.warning("using in-memory store; data is lost on restart")
        return InMemoryEscrowStore()
    return PostgresEscrowStore()


@lru_cache(maxsize=1)
def get_service() -> EscrowService:
    """One service per process. Tests override this dependency."""
    return EscrowService(build_store())
