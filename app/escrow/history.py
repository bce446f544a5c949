# app/escrow/history.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from app.escrow.model import HistoryAction, HistoryEntry

logger = logging.getLogger("escrow.history")


def record(
    store,
    *,
    transaction_id: str,
    actor_id: Optional[str],
    action_type: HistoryAction,
    description: str,
    now: Optional[datetime] = None,
) -> Optional[HistoryEntry]:
    """
    Append one row to the transaction's history.
    Best effort: the status change already committed, so a failure here is
    logged and returns None.
    """
    entry = HistoryEntry(
        id=str(uuid.uuid4()),
        transaction_id=transaction_id,
        actor_id=actor_id,
        action_type=HistoryAction(action_type).value,
        description=description,
        created_at=now or datetime.now(timezone.utc),
    )
    try:
        return store.append_history(entry)
    except Exception:
        logger.warning(
            "history append failed tx_id=%s action=%s",
            transaction_id,
            entry.action_type,
            exc_info=True,
        )
        return None
