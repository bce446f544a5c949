from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg2
import pytest
from fastapi.testclient import TestClient
from psycopg2.pool import PoolError

import app.escrow.pg_store as pg_store
from app.escrow.errors import AuthorizationError, ExternalServiceError, NotFoundError, StaleStateError
from app.escrow.model import TransactionStatus, UserStatus
from app.escrow.pg_store import PostgresEscrowStore
from app.escrow.service import EscrowService
from deps.services import get_service
from services.observability import set_actor_id

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 0
        self._one = None
        self._all = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        statement = " ".join(sql.split())
        if "set_config" in statement:
            self.conn.actor_calls.append(params)
            return
        self.conn.executed.append((statement, params))
        resp = self.conn.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        self._one = resp.get("one")
        self._all = resp.get("all", [])
        self.rowcount = resp.get("rowcount", 1 if self._one else len(self._all))

    def fetchone(self):
        return self._one

    def fetchall(self):
        return self._all


class FakeConn:
    def __init__(self, responses):
        self.responses = list(responses)
        self.executed = []
        self.actor_calls = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)


@pytest.fixture()
def fake_db(monkeypatch):
    def install(*responses):
        conn = FakeConn(responses)

        @contextmanager
        def fake_get_conn():
            try:
                yield conn
                conn.commits += 1
            except Exception:
                conn.rollbacks += 1
                raise

        monkeypatch.setattr(pg_store, "get_conn", fake_get_conn)
        return conn

    return install


def _tx_row(**overrides):
    row = {
        "id": "11111111-1111-1111-1111-111111111111",
        "buyer_id": "22222222-2222-2222-2222-222222222222",
        "buyer_email": "buyer@example.com",
        "deal_title": "Laptop",
        "amount": "5000.00",
        "currency": "NGN",
        "product_type": "physical_product",
        "status": "pending_payment",
        "seller_id": None,
        "seller_email": None,
        "muted_ids": [],
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _link_row(**overrides):
    row = {
        "id": "33333333-3333-3333-3333-333333333333",
        "token": "tok",
        "transaction_id": "11111111-1111-1111-1111-111111111111",
        "created_by": "22222222-2222-2222-2222-222222222222",
        "created_at": NOW,
        "expires_at": NOW + timedelta(hours=72),
        "used_by": None,
        "used_at": None,
        "is_active": True,
    }
    row.update(overrides)
    return row


def test_redeem_claims_link_and_tx_with_conditional_updates(fake_db):
    seller = "44444444-4444-4444-4444-444444444444"
    conn = fake_db(
        {"one": _link_row(used_by=seller, used_at=NOW, is_active=False)},
        {"one": _tx_row(seller_id=seller, seller_email="s@example.com", status="seller_joined")},
    )
    tx, link = PostgresEscrowStore().redeem_invite("tok", redeemer_id=seller, redeemer_email="s@example.com", now=NOW)

    assert tx.status == TransactionStatus.SELLER_JOINED
    assert tx.seller_id == seller
    assert link.used_by == seller
    link_sql, _ = conn.executed[0]
    assert link_sql.startswith("UPDATE invite_links")
    assert "used_by IS NULL" in link_sql and "AND is_active" in link_sql and "expires_at >=" in link_sql
    tx_sql, _ = conn.executed[1]
    assert "seller_id IS NULL" in tx_sql and "status = 'pending_payment'" in tx_sql
    assert conn.commits == 1


def test_redeem_lost_race_on_link(fake_db):
    conn = fake_db({"one": None}, {"one": {"?column?": 1}})
    with pytest.raises(StaleStateError) as exc:
        PostgresEscrowStore().redeem_invite("tok", redeemer_id="u", redeemer_email="u@example.com", now=NOW)
    assert exc.value.code == "INVITE_ALREADY_USED"
    assert conn.rollbacks == 1


def test_redeem_unknown_token(fake_db):
    fake_db({"one": None}, {"one": None})
    with pytest.raises(NotFoundError) as exc:
        PostgresEscrowStore().redeem_invite("nope", redeemer_id="u", redeemer_email="u@example.com", now=NOW)
    assert exc.value.code == "INVITE_INVALID"


def test_redeem_rolls_back_link_claim_when_tx_already_taken(fake_db):
    conn = fake_db({"one": _link_row(used_by="u")}, {"one": None})
    with pytest.raises(StaleStateError):
        PostgresEscrowStore().redeem_invite("tok", redeemer_id="u", redeemer_email="u@example.com", now=NOW)
    assert conn.rollbacks == 1
    assert conn.commits == 0


def test_update_is_check_and_set_on_updated_at(fake_db):
    conn = fake_db({"one": _tx_row(status="held")})
    tx = PostgresEscrowStore().update_transaction(
        "tx", expected_updated_at=NOW, changes={"status": TransactionStatus.HELD, "paid_at": NOW}
    )
    sql, params = conn.executed[0]
    assert "WHERE id = %(_id)s AND updated_at = %(_expected)s" in sql
    assert "updated_at = clock_timestamp()" in sql
    assert params["status"] == "held"
    assert params["_expected"] == NOW
    assert tx.status == TransactionStatus.HELD


def test_update_miss_is_stale_or_not_found(fake_db):
    fake_db({"one": None}, {"one": {"?column?": 1}})
    with pytest.raises(StaleStateError):
        PostgresEscrowStore().update_transaction("tx", expected_updated_at=NOW, changes={"status": "held"})

    fake_db({"one": None}, {"one": None})
    with pytest.raises(NotFoundError):
        PostgresEscrowStore().update_transaction("tx", expected_updated_at=NOW, changes={"status": "held"})


def test_update_refuses_unknown_columns(fake_db):
    conn = fake_db()
    with pytest.raises(ValueError):
        PostgresEscrowStore().update_transaction("tx", expected_updated_at=NOW, changes={"buyer_id": "me"})
    assert conn.executed == []


def test_muted_ids_cast_to_uuid_array(fake_db):
    conn = fake_db({"one": _tx_row(muted_ids=["55555555-5555-5555-5555-555555555555"])})
    tx = PostgresEscrowStore().update_transaction(
        "tx", expected_updated_at=NOW, changes={"muted_ids": ("55555555-5555-5555-5555-555555555555",)}
    )
    sql, params = conn.executed[0]
    assert "muted_ids = %(muted_ids)s::uuid[]" in sql
    assert params["muted_ids"] == ["55555555-5555-5555-5555-555555555555"]
    assert tx.muted_ids == ("55555555-5555-5555-5555-555555555555",)


def test_set_default_is_one_statement(fake_db):
    account = {
        "id": "a1",
        "user_id": "u1",
        "payout_type": "bank",
        "is_default": True,
        "bank_name": "GTBank",
        "account_number": "0123",
        "account_name": "Ada",
        "created_at": NOW,
        "updated_at": NOW,
    }
    conn = fake_db({"rowcount": 2}, {"all": [account, {**account, "id": "a2", "is_default": False}]})
    accounts = PostgresEscrowStore().set_default_payout_account("u1", "a1")

    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE payout_accounts SET is_default = (id = %(account_id)s)")
    assert "EXISTS" in sql
    assert params == {"account_id": "a1", "user_id": "u1"}
    assert [a.is_default for a in accounts] == [True, False]


def test_set_default_unknown_account(fake_db):
    fake_db({"rowcount": 0})
    with pytest.raises(NotFoundError):
        PostgresEscrowStore().set_default_payout_account("u1", "nope")


def _profile_row(**overrides):
    row = {
        "id": "55555555-5555-5555-5555-555555555555",
        "email": "user@example.com",
        "full_name": None,
        "phone": None,
        "status": "active",
        "suspension_reason": None,
        "can_chat": True,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_ensure_profile_upserts_and_returns_the_stored_row(fake_db):
    conn = fake_db({"one": _profile_row(status="suspended", suspension_reason="fraud")})
    profile = PostgresEscrowStore().ensure_profile(
        "55555555-5555-5555-5555-555555555555", "user@example.com", now=NOW
    )

    assert profile.status == UserStatus.SUSPENDED
    assert profile.is_suspended
    sql, _ = conn.executed[0]
    assert sql.startswith("INSERT INTO profiles") and "ON CONFLICT (id)" in sql and "RETURNING *" in sql


def test_update_profile_unknown_user(fake_db):
    fake_db({"one": None})
    with pytest.raises(NotFoundError) as exc:
        PostgresEscrowStore().update_profile("55555555-5555-5555-5555-555555555555", {"can_chat": False})
    assert exc.value.code == "USER_NOT_FOUND"


def test_update_profile_refuses_unknown_columns(fake_db):
    conn = fake_db()
    with pytest.raises(ValueError):
        PostgresEscrowStore().update_profile("55555555-5555-5555-5555-555555555555", {"email": "x@example.com"})
    assert conn.executed == []


def test_list_profiles_searches_email_name_and_phone(fake_db):
    conn = fake_db({"all": [_profile_row()]})
    rows = PostgresEscrowStore().list_profiles(search=" ada ")

    assert [p.email for p in rows] == ["user@example.com"]
    sql, params = conn.executed[0]
    assert "email ILIKE %(q)s OR full_name ILIKE %(q)s OR phone ILIKE %(q)s" in sql
    assert "ORDER BY created_at DESC" in sql
    assert params["q"] == "%ada%"


def test_actor_is_exposed_to_row_policies(fake_db):
    conn = fake_db({"one": None})
    set_actor_id("66666666-6666-6666-6666-666666666666")
    try:
        PostgresEscrowStore().get_transaction("tx")
    finally:
        set_actor_id(None)
    assert conn.actor_calls == [("66666666-6666-6666-6666-666666666666",)]
    assert conn.executed[0][0].startswith("SELECT")


class _PolicyDenied(Exception):
    pgcode = "42501"


def test_db_errors_are_mapped(fake_db):
    fake_db(_PolicyDenied("new row violates row-level security policy"))
    with pytest.raises(AuthorizationError) as exc:
        PostgresEscrowStore().get_transaction("tx")
    assert exc.value.code == "ROW_POLICY_DENIED"


def test_unknown_db_errors_propagate(fake_db):
    fake_db(RuntimeError("SOME_RANDOM_DB_BLOWUP_123"))
    with pytest.raises(RuntimeError):
        PostgresEscrowStore().get_transaction("tx")


@pytest.mark.parametrize(
    "error",
    [
        psycopg2.OperationalError("could not connect to server: Connection refused"),
        psycopg2.InterfaceError("connection already closed"),
        PoolError("connection pool exhausted"),
    ],
)
def test_unreachable_database_is_external_failure(monkeypatch, error):
    @contextmanager
    def down():
        raise error
        yield

    monkeypatch.setattr(pg_store, "get_conn", down)
    with pytest.raises(ExternalServiceError) as exc:
        PostgresEscrowStore().get_transaction("tx")
    assert exc.value.code == "DB_UNAVAILABLE"


def test_unreachable_database_answers_502(app, monkeypatch, storage, mailer):
    @contextmanager
    def down():
        raise psycopg2.OperationalError("server closed the connection unexpectedly")
        yield

    monkeypatch.setattr(pg_store, "get_conn", down)
    service = EscrowService(PostgresEscrowStore(), storage=storage, mailer=mailer)
    app.dependency_overrides[get_service] = lambda: service

    r = TestClient(app, raise_server_exceptions=False).get("/v1/fees/quote", params={"amount": "100"})
    assert r.status_code == 502
    assert r.json()["detail"] == "DB_UNAVAILABLE"
