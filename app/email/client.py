# app/email/client.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.http import HttpClient
from services.redaction import redact_dict
from settings import settings

logger = logging.getLogger("escrow.email")

# event_type tags understood by the transactional email function
TRANSACTION_CREATED = "transaction_created"
SELLER_JOINED = "seller_joined"
PAYMENT_CONFIRMED = "payment_confirmed"
CRYPTO_PAYMENT_SUBMITTED = "crypto_payment_submitted"
DELIVERY_MARKED = "delivery_marked"
BUYER_CONFIRMED = "buyer_confirmed"
FUNDS_RELEASED = "funds_released"
REFUND_REQUESTED = "refund_requested"
REFUND_APPROVED = "refund_approved"
REFUND_DENIED = "refund_denied"
DISPUTE_FILED = "dispute_filed"
COMPLAINT_FILED = "complaint_filed"
STATUS_OVERRIDDEN = "status_overridden"
FEE_NEGOTIATION = "fee_negotiation"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


class EmailClient:
    """
    Fire-and-forget calls to the hosted "notify-transaction" function.
    send() never raises: email is a courtesy, the state change already happened.
    """

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        key: Optional[str] = None,
        http: Optional[HttpClient] = None,
    ):
        self.url = url if url is not None else settings.EMAIL_FUNCTION_URL
        self.key = key if key is not None else settings.EMAIL_FUNCTION_KEY
        self.http = http or HttpClient(timeout_s=settings.EMAIL_HTTP_TIMEOUT_S)

    def send(self, event_type: str, transaction: dict[str, Any]) -> bool:
        if not self.url:
            logger.debug("email disabled event_type=%s", event_type)
            return False

        body = {"event_type": event_type, "transaction": _jsonable(transaction)}
        headers = {"Content-Type": "application/json"}
        if self.key:
            headers["Authorization"] = f"Bearer {self.key}"

        try:
            resp = self.http.post(self.url, headers=headers, json_body=body)
        except httpx.HTTPError as e:
            logger.warning("email send failed event_type=%s err=%s", event_type, e)
            return False

        if not resp.ok:
            logger.warning(
                "email send rejected event_type=%s status=%s payload=%s",
                event_type,
                resp.status_code,
                redact_dict(body["transaction"]),
            )
            return False

        logger.info("email sent event_type=%s", event_type)
        return True
