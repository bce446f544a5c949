# app/escrow/fees.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from app.escrow.errors import ValidationError
from settings import settings

logger = logging.getLogger("escrow.fees")

CENT = Decimal("0.01")

# site_settings keys edited from the admin settings screen
SERVICE_FEE_KEY = "service_fee_percent"
HIGH_VALUE_FEE_KEY = "high_value_fee_percent"
HIGH_VALUE_THRESHOLD_KEY = "high_value_threshold"
FEE_SETTING_KEYS = (SERVICE_FEE_KEY, HIGH_VALUE_FEE_KEY, HIGH_VALUE_THRESHOLD_KEY)


@dataclass(frozen=True)
class FeeConfig:
    threshold: Decimal
    below_rate: Decimal
    at_or_above_rate: Decimal


@dataclass(frozen=True)
class FeeQuote:
    base_amount: Decimal
    rate: Decimal
    fee: Decimal
    buyer_total: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "base_amount": self.base_amount,
            "rate_percent": self.rate,
            "fee": self.fee,
            "buyer_total": self.buyer_total,
        }


def _as_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("amount must be a number", code="INVALID_AMOUNT") from exc


def compute_fee(base_amount: Any, config: FeeConfig) -> FeeQuote:
    """
    fee = round(base * rate) / 100, where rate is a whole-number percent.

    Rounding is applied to the percent-scaled product and not to the final fee,
    so figures match amounts that were already shown to users.
    Amounts exactly at the threshold take the at-or-above rate.
    """
    base = _as_decimal(base_amount)
    if not base.is_finite() or base < 0:
        raise ValidationError("amount must not be negative", code="INVALID_AMOUNT")

    rate = config.at_or_above_rate if base >= config.threshold else config.below_rate
    scaled = (base * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    fee = (scaled / Decimal(100)).quantize(CENT)
    return FeeQuote(
        base_amount=base,
        rate=rate,
        fee=fee,
        buyer_total=(base + fee).quantize(CENT),
    )


def default_fee_config() -> FeeConfig:
    return FeeConfig(
        threshold=settings.DEFAULT_HIGH_VALUE_THRESHOLD,
        below_rate=settings.DEFAULT_SERVICE_FEE_PERCENT,
        at_or_above_rate=settings.DEFAULT_HIGH_VALUE_FEE_PERCENT,
    )


def _parse_positive(raw: Any, fallback: Decimal) -> Decimal:
    # unparsable or zero falls back, same as the settings screen
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError, AttributeError):
        return fallback
    if not value.is_finite() or value <= 0:
        return fallback
    return value


def fee_config_from_settings(values: dict[str, Any]) -> FeeConfig:
    defaults = default_fee_config()
    return FeeConfig(
        threshold=_parse_positive(values.get(HIGH_VALUE_THRESHOLD_KEY), defaults.threshold),
        below_rate=_parse_positive(values.get(SERVICE_FEE_KEY), defaults.below_rate),
        at_or_above_rate=_parse_positive(values.get(HIGH_VALUE_FEE_KEY), defaults.at_or_above_rate),
    )


def load_fee_config(store) -> FeeConfig:
    """Fetch the current rates. Called every time a fee is shown or charged."""
    values = store.get_site_settings(FEE_SETTING_KEYS)
    config = fee_config_from_settings(values)
    logger.debug(
        "fee config threshold=%s below=%s at_or_above=%s",
        config.threshold,
        config.below_rate,
        config.at_or_above_rate,
    )
    return config
