# app/escrow/errors.py
from __future__ import annotations


class EscrowError(Exception):
    """Base for every failure the escrow core reports to callers."""

    code = "ESCROW_ERROR"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.code)
        if code:
            self.code = code
        self.message = message or self.code


class ValidationError(EscrowError):
    code = "VALIDATION_FAILED"


class AuthorizationError(EscrowError):
    code = "FORBIDDEN"


class NotFoundError(EscrowError):
    code = "NOT_FOUND"


class InvalidTransition(EscrowError):
    code = "INVALID_TRANSITION"


class StaleStateError(EscrowError):
    """The row changed underneath us (lost a race) or an invite was already consumed."""

    code = "STALE_STATE"


class ExternalServiceError(EscrowError):
    code = "EXTERNAL_SERVICE_FAILED"
