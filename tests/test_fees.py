from decimal import Decimal

import pytest

from app.escrow import fees
from app.escrow.errors import ValidationError
from app.escrow.fees import FeeConfig, compute_fee
from conftest import auth


CONFIG = FeeConfig(threshold=Decimal("10000"), below_rate=Decimal("5"), at_or_above_rate=Decimal("2"))


def test_below_threshold_uses_service_rate():
    q = compute_fee("5000", CONFIG)
    assert q.rate == Decimal("5")
    assert q.fee == Decimal("250.00")
    assert q.buyer_total == Decimal("5250.00")


def test_threshold_boundary_switches_rate():
    below = compute_fee("9999", CONFIG)
    at = compute_fee("10000", CONFIG)
    assert below.fee == Decimal("499.95")
    assert at.rate == Decimal("2")
    assert at.fee == Decimal("200.00")
    assert at.buyer_total == Decimal("10200.00")


def test_zero_amount_has_no_fee():
    q = compute_fee(0, CONFIG)
    assert q.fee == Decimal("0.00")
    assert q.buyer_total == Decimal("0.00")


def test_negative_amount_rejected():
    with pytest.raises(ValidationError) as exc:
        compute_fee("-1", CONFIG)
    assert exc.value.code == "INVALID_AMOUNT"


def test_garbage_amount_rejected():
    with pytest.raises(ValidationError):
        compute_fee("abc", CONFIG)


def test_rounding_is_half_up_on_scaled_product():
    # 0.1 * 5 = 0.5 -> rounds to 1 -> fee 0.01
    assert compute_fee("0.1", CONFIG).fee == Decimal("0.01")
    # 0.09 * 5 = 0.45 -> rounds to 0
    assert compute_fee("0.09", CONFIG).fee == Decimal("0.00")


def test_fee_is_never_negative_and_monotonic_within_a_band():
    last = Decimal("-1")
    for amount in ("0", "1", "10", "99.99", "1000", "5000.50", "9999.99"):
        fee = compute_fee(amount, CONFIG).fee
        assert fee >= 0
        assert fee >= last
        last = fee

    last = Decimal("-1")
    for amount in ("10000", "10000.01", "25000", "1000000"):
        fee = compute_fee(amount, CONFIG).fee
        assert fee >= last
        last = fee


def test_config_from_settings_falls_back_on_bad_values():
    cfg = fees.fee_config_from_settings(
        {
            fees.SERVICE_FEE_KEY: "not-a-number",
            fees.HIGH_VALUE_FEE_KEY: "0",
            fees.HIGH_VALUE_THRESHOLD_KEY: "50000",
        }
    )
    assert cfg.below_rate == Decimal("5")
    assert cfg.at_or_above_rate == Decimal("2")
    assert cfg.threshold == Decimal("50000")


def test_load_fee_config_reads_store(store):
    store.upsert_site_settings({fees.SERVICE_FEE_KEY: "7"})
    cfg = fees.load_fee_config(store)
    assert cfg.below_rate == Decimal("7")
    assert compute_fee("1000", cfg).fee == Decimal("70.00")


def test_quote_endpoint_uses_live_rates(client, store):
    r = client.get("/v1/fees/quote", params={"amount": "5000"})
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["fee"]) == Decimal("250.00")

    store.upsert_site_settings({fees.SERVICE_FEE_KEY: "10"})
    r = client.get("/v1/fees/quote", params={"amount": "5000"})
    assert Decimal(r.json()["fee"]) == Decimal("500.00")
    assert Decimal(r.json()["buyer_total"]) == Decimal("5500.00")


def test_fee_negotiation_emails_admins(client, buyer, mailer):
    r = client.post(
        "/v1/fees/negotiate",
        json={"deal_title": "Bulk order", "amount": "20000", "message": "Can we do 1%?"},
        headers=auth(buyer),
    )
    assert r.status_code == 202, r.text
    event, payload = mailer.sent[-1]
    assert event == "fee_negotiation"
    assert payload["buyer_email"] == buyer.email
    assert payload["negotiation_message"] == "Can we do 1%?"
    assert payload["service_fee"] == Decimal("400.00")
