# routes/_convert.py
from __future__ import annotations

from typing import Optional

from fastapi import UploadFile

from app.escrow.errors import ValidationError
from app.escrow.fees import FeeQuote
from app.escrow.model import Transaction
from app.escrow.proofs import ProofUpload
from schemas import FeeQuoteOut, TransactionOut
from settings import settings


def tx_out(tx: Transaction) -> TransactionOut:
    return TransactionOut.model_validate(tx)


def quote_out(quote: Optional[FeeQuote]) -> Optional[FeeQuoteOut]:
    if quote is None:
        return None
    return FeeQuoteOut(**quote.as_dict())


def proof_upload(file: Optional[UploadFile], description: Optional[str]) -> Optional[ProofUpload]:
    # browsers send an empty part when no file was picked
    if file is None or not file.filename:
        return None
    limit = settings.PROOF_MAX_BYTES
    # one byte past the cap is enough to reject; the rest stays spooled
    content = file.file.read(limit + 1)
    if len(content) > limit:
        raise ValidationError(f"proof file is larger than {limit} bytes", code="PROOF_TOO_LARGE")
    return ProofUpload(
        filename=file.filename,
        content=content,
        content_type=file.content_type or "application/octet-stream",
        description=(description or "").strip() or None,
    )
