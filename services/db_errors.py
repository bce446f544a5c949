# services/db_errors.py
from __future__ import annotations

import logging
import re

import psycopg2
from psycopg2.pool import PoolError

from app.escrow.errors import (
    AuthorizationError,
    EscrowError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger("escrow.db")

# Postgres SQLSTATE -> (error class, code)
PG_ERROR_MAP: dict[str, tuple[type[EscrowError], str]] = {
    "42501": (AuthorizationError, "ROW_POLICY_DENIED"),
    "23505": (ValidationError, "DUPLICATE"),
    "23503": (NotFoundError, "REFERENCED_ROW_MISSING"),
    "23514": (ValidationError, "CHECK_VIOLATION"),
    "22P02": (ValidationError, "INVALID_INPUT"),
}

# no SQLSTATE: the server or the pool never answered
UNAVAILABLE_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, PoolError)

# row policies and triggers raise "ESCROW_ERROR: CODE ..."
_RAISED_CODE = re.compile(r"ESCROW_ERROR:\s*([A-Z_]+)")


def _extract_code(exc: Exception) -> str | None:
    m = _RAISED_CODE.search(str(exc))
    if m:
        return m.group(1)

    diag = getattr(exc, "diag", None)
    if diag is not None:
        for attr in ("message_primary", "message_detail", "message_hint"):
            val = getattr(diag, attr, None)
            if isinstance(val, str) and val:
                m = _RAISED_CODE.search(val)
                if m:
                    return m.group(1)
    return None


def escrow_error_from_db(exc: Exception) -> EscrowError | None:
    """
    Translate a psycopg2 error into the matching EscrowError.
    Connection and pool failures become ExternalServiceError (502, retryable).
    Returns None when the error is not a known failure; the caller re-raises
    the original and the API answers 500.
    """
    if isinstance(exc, EscrowError):
        return exc

    code = _extract_code(exc)
    if code:
        return ValidationError(code.replace("_", " ").lower(), code=code)

    pgcode = getattr(exc, "pgcode", None)
    if pgcode and pgcode in PG_ERROR_MAP:
        cls, err_code = PG_ERROR_MAP[pgcode]
        logger.info("db error mapped pgcode=%s code=%s", pgcode, err_code)
        return cls(err_code.replace("_", " ").lower(), code=err_code)

    if isinstance(exc, UNAVAILABLE_ERRORS):
        logger.warning("database unavailable error=%s", type(exc).__name__)
        return ExternalServiceError("database unavailable", code="DB_UNAVAILABLE")

    return None
