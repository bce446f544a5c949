from decimal import Decimal
from types import SimpleNamespace

import routes.transactions as transaction_routes
from app.escrow.errors import ExternalServiceError
from conftest import auth, held_deal, joined_deal
from deps.services import get_service
from security import create_access_token
from settings import settings


def _create(client, buyer, amount=5000):
    r = client.post(
        "/v1/transactions",
        json={"deal_title": "Vintage camera", "amount": amount, "product_type": "physical_product"},
        headers=auth(buyer),
    )
    assert r.status_code == 201, r.text
    return r.json()


def test_full_flow_over_http(client, buyer, seller, admin, storage):
    created = _create(client, buyer)
    assert Decimal(created["quote"]["fee"]) == Decimal("250.00")
    tx_id = created["transaction"]["id"]
    token = created["invite"]["token"]
    assert created["invite"]["url"].endswith(f"/invite/{token}")

    r = client.post(f"/v1/invites/{token}/redeem", headers=auth(seller))
    assert r.json()["status"] == "seller_joined"

    r = client.post(
        f"/v1/transactions/{tx_id}/pay",
        data={"method": "card", "payment_reference": "PSK-777", "proof_description": "bank receipt"},
        files={"proof": ("receipt.png", b"\x89PNG\r\n", "image/png")},
        headers=auth(buyer),
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "held"
    assert body["payment_reference"] == "PSK-777"
    assert body["proof_description"] == "bank receipt"
    assert storage.uploads[-1][0].startswith(f"{tx_id}/buyer-")

    r = client.post(f"/v1/transactions/{tx_id}/deliver", headers=auth(seller))
    assert r.json()["status"] == "pending_confirmation"

    r = client.post(f"/v1/transactions/{tx_id}/confirm", headers=auth(buyer))
    assert r.json()["status"] == "pending_release"

    r = client.post(f"/v1/admin/transactions/{tx_id}/release", headers=auth(admin))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "released"
    assert r.json()["released_at"] is not None

    r = client.get(f"/v1/transactions/{tx_id}/history", headers=auth(seller))
    actions = [h["action_type"] for h in r.json()]
    assert actions[:3] == ["status_change", "status_change", "status_change"]
    assert "payment" in actions and "seller_joined" in actions and "transaction_created" in actions

    r = client.get(f"/v1/transactions/{tx_id}", headers=auth(buyer))
    assert r.json()["role"] == "buyer"
    assert r.json()["allowed_actions"] == []


def test_crypto_payment_form(client, service, buyer, seller):
    tx = joined_deal(service, buyer, seller)
    r = client.post(
        f"/v1/transactions/{tx.id}/pay",
        data={
            "method": "crypto",
            "crypto_asset": "BTC",
            "crypto_amount_sent": "0.01",
            "crypto_sender_address": "bc1qsender",
            "crypto_tx_hash": "abc123",
        },
        headers=auth(buyer),
    )
    assert r.status_code == 200, r.text
    assert r.json()["payment_reference"] == "CRYPTO-BTC-abc123"


def test_refund_and_dispute_routes(client, service, buyer, seller, admin):
    tx = held_deal(service, buyer, seller)
    r = client.post(f"/v1/transactions/{tx.id}/refund-request", json={"reason": "wrong colour"}, headers=auth(buyer))
    assert r.json()["status"] == "refund_requested"

    r = client.post(f"/v1/admin/transactions/{tx.id}/refund/deny", json={"note": "colour matches listing"}, headers=auth(admin))
    assert r.json()["status"] == "held"

    r = client.post(f"/v1/admin/transactions/{tx.id}/move-to-delivery", headers=auth(admin))
    assert r.json()["status"] == "pending_delivery"

    r = client.post(f"/v1/transactions/{tx.id}/dispute", json={"reason": "no reply"}, headers=auth(seller))
    assert r.json()["status"] == "disputed"

    r = client.post(
        f"/v1/admin/transactions/{tx.id}/override",
        json={"target_status": "pending_release", "note": "evidence reviewed"},
        headers=auth(admin),
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "pending_release"

    r = client.get("/v1/admin/history", headers=auth(admin))
    assert r.json()[0]["action_type"] == "override"


def test_edit_and_delete_routes(client, buyer):
    created = _create(client, buyer)
    tx_id = created["transaction"]["id"]
    r = client.patch(f"/v1/transactions/{tx_id}", json={"amount": 20000}, headers=auth(buyer))
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["amount"]) == Decimal("20000")

    r = client.patch(
        f"/v1/transactions/{tx_id}",
        json={"deal_title": "late", "expected_updated_at": created["transaction"]["updated_at"]},
        headers=auth(buyer),
    )
    assert r.status_code == 409
    assert r.json()["detail"] == "STALE_STATE"

    r = client.delete(f"/v1/transactions/{tx_id}", headers=auth(buyer))
    assert r.status_code == 204
    r = client.get(f"/v1/transactions/{tx_id}", headers=auth(buyer))
    assert r.status_code == 404
    assert r.json()["detail"] == "TRANSACTION_NOT_FOUND"


def test_list_scopes(client, service, buyer, seller, admin):
    held_deal(service, buyer, seller)
    assert len(client.get("/v1/transactions", headers=auth(buyer)).json()) == 1
    assert len(client.get("/v1/transactions", params={"scope": "seller"}, headers=auth(seller)).json()) == 1
    r = client.get("/v1/transactions", params={"scope": "all"}, headers=auth(buyer))
    assert r.status_code == 403
    r = client.get("/v1/transactions", params={"scope": "all", "status": "held"}, headers=auth(admin))
    assert len(r.json()) == 1


def test_expire_stale_route(client, service, buyer, admin, clock):
    created = _create(client, buyer)
    clock.advance(hours=100)
    r = client.post("/v1/admin/transactions/expire-stale", headers=auth(admin))
    assert r.status_code == 200, r.text
    assert [t["id"] for t in r.json()["expired"]] == [created["transaction"]["id"]]


def test_attach_proof_route(client, service, buyer, seller, storage):
    tx = held_deal(service, buyer, seller)
    r = client.post(
        f"/v1/transactions/{tx.id}/proof",
        data={"proof_description": "unboxing photo"},
        files={"proof": ("box.jpg", b"\xff\xd8\xff", "image/jpeg")},
        headers=auth(seller),
    )
    assert r.status_code == 200, r.text
    assert r.json()["proof_description"] == "unboxing photo"
    assert r.json()["status"] == "held"


# ---------------------------
# Error mapping
# ---------------------------

def test_error_statuses(client, service, buyer, seller):
    tx = held_deal(service, buyer, seller)

    r = client.post(f"/v1/transactions/{tx.id}/confirm", headers=auth(buyer))
    assert r.status_code == 409
    assert r.json()["detail"] == "ILLEGAL_TRANSITION"

    r = client.post(f"/v1/transactions/{tx.id}/deliver", headers=auth(buyer))
    assert r.status_code == 403
    assert r.json()["detail"] == "ROLE_NOT_ALLOWED"

    r = client.post(f"/v1/transactions/{tx.id}/refund-request", json={"reason": "   "}, headers=auth(buyer))
    assert r.status_code == 422
    assert r.json()["detail"] == "REASON_REQUIRED"

    r = client.post(f"/v1/admin/transactions/{tx.id}/release", headers=auth(buyer))
    assert r.status_code == 403
    assert r.json()["detail"] == "ADMIN_REQUIRED"


def test_storage_outage_is_bad_gateway(client, service, buyer, seller, storage, monkeypatch):
    tx = held_deal(service, buyer, seller)

    def down(path, content, content_type):
        raise ExternalServiceError("storage upload failed", code="STORAGE_UNAVAILABLE")

    monkeypatch.setattr(storage, "upload", down)
    r = client.post(
        f"/v1/transactions/{tx.id}/deliver",
        files={"proof": ("w.pdf", b"%PDF", "application/pdf")},
        headers=auth(seller),
    )
    assert r.status_code == 502
    assert r.json()["detail"] == "STORAGE_UNAVAILABLE"
    assert service.store.get_transaction(tx.id).status.value == "held"


class _CountingReader:
    def __init__(self, raw):
        self.raw = raw
        self.consumed = 0

    def read(self, size=-1):
        chunk = self.raw.read(size)
        self.consumed += len(chunk)
        return chunk


def test_oversized_proof_is_rejected_without_buffering_it(client, service, buyer, seller, storage, monkeypatch):
    tx = held_deal(service, buyer, seller)
    readers = []
    real = transaction_routes.proof_upload

    def counting(file, description):
        if file is not None:
            reader = _CountingReader(file.file)
            readers.append(reader)
            file = SimpleNamespace(filename=file.filename, file=reader, content_type=file.content_type)
        return real(file, description)

    monkeypatch.setattr(settings, "PROOF_MAX_BYTES", 1024)
    monkeypatch.setattr(transaction_routes, "proof_upload", counting)
    r = client.post(
        f"/v1/transactions/{tx.id}/deliver",
        files={"proof": ("huge.png", b"\0" * (3 * 1024 * 1024), "image/png")},
        headers=auth(seller),
    )
    assert r.status_code == 422
    assert r.json()["detail"] == "PROOF_TOO_LARGE"
    assert [reader.consumed for reader in readers] == [1025]
    assert storage.uploads == []
    assert service.store.get_transaction(tx.id).status.value == "held"


def test_error_body_carries_request_id(client, buyer):
    r = client.get("/v1/transactions/missing", headers={**auth(buyer), "X-Request-ID": "req-123"})
    assert r.status_code == 404
    assert r.json() == {"detail": "TRANSACTION_NOT_FOUND", "message": "transaction not found", "request_id": "req-123"}
    assert r.headers["X-Request-ID"] == "req-123"


def test_unknown_error_returns_500_without_leaking(app, client):
    class Broken:
        def quote_fee(self, amount):
            raise RuntimeError("SOME_RANDOM_DB_BLOWUP_123")

    app.dependency_overrides[get_service] = lambda: Broken()
    r = client.get("/v1/fees/quote", params={"amount": "10"})
    assert r.status_code == 500, r.text
    assert r.json() == {"detail": "Internal server error"}
    assert "SOME_RANDOM_DB_BLOWUP_123" not in r.text


# ---------------------------
# Auth
# ---------------------------

def test_missing_or_bad_token_is_401(client, buyer):
    assert client.get("/v1/transactions").status_code == 401
    r = client.get("/v1/transactions", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["detail"] == "UNAUTHORIZED"

    expired = create_access_token(buyer.user_id, buyer.email, minutes=-5)
    r = client.get("/v1/transactions", headers={"Authorization": f"Bearer {expired}"})
    assert r.status_code == 401


def test_roles_come_from_the_store(client, store, buyer):
    r = client.get("/v1/admin/complaints", headers=auth(buyer))
    assert r.status_code == 403
    store.grant_role(buyer.user_id, "admin")
    r = client.get("/v1/admin/complaints", headers=auth(buyer))
    assert r.status_code == 200, r.text
