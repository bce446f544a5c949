# app/escrow/proofs.py
from __future__ import annotations

import logging
import mimetypes
import time
from dataclasses import dataclass
from typing import Callable, Optional

from app.escrow.errors import ValidationError
from app.escrow.model import Role
from settings import settings

logger = logging.getLogger("escrow.proofs")

PDF = "application/pdf"

_PREFIX = {
    Role.BUYER: "buyer",
    Role.SELLER: "seller",
}
CRYPTO_PREFIX = "crypto-proof"


@dataclass(frozen=True)
class ProofUpload:
    filename: str
    content: bytes
    content_type: str
    description: Optional[str] = None


def _extension(filename: str, content_type: str) -> str:
    if "." in (filename or ""):
        ext = filename.rsplit(".", 1)[1].lower().strip()
        if ext.isalnum() and len(ext) <= 5:
            return ext
    guessed = mimetypes.guess_extension(content_type or "") or ""
    return guessed.lstrip(".") or "bin"


class ProofIntake:
    def __init__(self, storage, *, max_bytes: Optional[int] = None, clock_ms: Optional[Callable[[], int]] = None):
        self.storage = storage
        self.max_bytes = max_bytes or settings.PROOF_MAX_BYTES
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

    def validate(self, upload: ProofUpload) -> None:
        size = len(upload.content or b"")
        if size == 0:
            raise ValidationError("proof file is empty", code="PROOF_EMPTY")
        if size > self.max_bytes:
            raise ValidationError(
                f"proof file is larger than {self.max_bytes} bytes",
                code="PROOF_TOO_LARGE",
            )
        ctype = (upload.content_type or "").split(";", 1)[0].strip().lower()
        if not (ctype.startswith("image/") or ctype == PDF):
            raise ValidationError("proof must be an image or a PDF", code="PROOF_TYPE_NOT_ALLOWED")

    def object_path(self, transaction_id: str, prefix: str, upload: ProofUpload) -> str:
        ext = _extension(upload.filename, upload.content_type)
        return f"{transaction_id}/{prefix}-{self._clock_ms()}.{ext}"

    def accept(
        self,
        transaction_id: str,
        uploader_role: Role,
        upload: ProofUpload,
        *,
        crypto: bool = False,
    ) -> str:
        """Validate, upload and return the public URL. Nothing is written to the transaction here."""
        self.validate(upload)
        prefix = CRYPTO_PREFIX if crypto else _PREFIX.get(Role(uploader_role), "proof")
        path = self.object_path(transaction_id, prefix, upload)
        content_type = upload.content_type.split(";", 1)[0].strip().lower()
        url = self.storage.upload(path, upload.content, content_type)
        logger.info("proof accepted tx_id=%s role=%s path=%s", transaction_id, Role(uploader_role).value, path)
        return url
