import threading
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from app.escrow import invites
from app.escrow.errors import AuthorizationError, InvalidTransition, NotFoundError, StaleStateError, ValidationError
from app.escrow.model import InviteLink, ProductType, Transaction, TransactionStatus
from conftest import Clock, make_user, auth, create_deal


def test_scenario_a_create_invite_redeem(service, buyer, seller, store):
    created = create_deal(service, buyer, amount="5000")
    assert created.quote.fee == Decimal("250.00")
    assert created.quote.buyer_total == Decimal("5250.00")
    assert created.invite is not None
    assert created.invite_url.endswith(f"/invite/{created.invite.token}")
    assert created.transaction.invite_token == created.invite.token

    tx = service.redeem_invite(seller.identity, created.invite.token)
    assert tx.status == TransactionStatus.SELLER_JOINED
    assert tx.seller_id == seller.user_id
    assert tx.seller_email == seller.email

    link = store.get_invite(created.invite.token)
    assert link.is_active is False
    assert link.used_by == seller.user_id


def test_second_redeem_is_already_used_and_seller_unchanged(service, buyer, seller, store):
    created = create_deal(service, buyer)
    service.redeem_invite(seller.identity, created.invite.token)

    late = make_user("late")
    with pytest.raises(StaleStateError) as exc:
        service.redeem_invite(late.identity, created.invite.token)
    assert exc.value.code == "INVITE_ALREADY_USED"
    assert store.get_transaction(created.transaction.id).seller_id == seller.user_id


def test_classify_states(service, buyer, seller, clock):
    created = create_deal(service, buyer)
    token = created.invite.token

    assert service.resolve_invite("nope").state == invites.INVALID
    assert service.resolve_invite(token).state == invites.VALID
    assert service.resolve_invite(token, seller.identity).state == invites.VALID
    assert service.resolve_invite(token, buyer.identity).state == invites.OWN_LINK

    clock.advance(hours=73)
    assert service.resolve_invite(token, seller.identity).state == invites.EXPIRED


def test_expired_even_if_still_active(service, buyer, seller, store, clock):
    created = create_deal(service, buyer)
    link = store.get_invite(created.invite.token)
    tx = store.get_transaction(created.transaction.id)

    later = link.expires_at + timedelta(seconds=1)
    assert link.is_active
    assert invites.classify(link, tx, seller.identity, later) == invites.EXPIRED

    clock.advance(hours=80)
    with pytest.raises(ValidationError) as exc:
        service.redeem_invite(seller.identity, created.invite.token)
    assert exc.value.code == "INVITE_EXPIRED"


def test_link_still_valid_at_the_expiry_instant(service, buyer, seller, store, clock):
    created = create_deal(service, buyer)
    link = store.get_invite(created.invite.token)

    clock.now = link.expires_at
    assert service.resolve_invite(link.token, seller.identity).state == invites.VALID
    tx = service.redeem_invite(seller.identity, link.token)
    assert tx.seller_id == seller.user_id


def test_used_beats_expired():
    user = make_user("x")
    now = Clock().now
    tx = Transaction(
        id="t1",
        buyer_id="b1",
        buyer_email="b@example.com",
        deal_title="Phone",
        amount=Decimal("10"),
        product_type=ProductType.SERVICE,
        status=TransactionStatus.SELLER_JOINED,
        created_at=now,
        updated_at=now,
        seller_id="s1",
    )
    link = InviteLink(
        id="l1",
        token="tok",
        transaction_id="t1",
        created_by="b1",
        created_at=now,
        expires_at=now - timedelta(hours=1),
        used_by="s1",
        used_at=now,
        is_active=False,
    )
    assert invites.classify(link, tx, user.identity, now) == invites.ALREADY_USED


def test_buyer_cannot_redeem_own_link(service, buyer):
    created = create_deal(service, buyer)
    with pytest.raises(ValidationError) as exc:
        service.redeem_invite(buyer.identity, created.invite.token)
    assert exc.value.code == "INVITE_OWN_LINK"


def test_unknown_token_is_not_found(service, seller):
    with pytest.raises(NotFoundError):
        service.redeem_invite(seller.identity, "does-not-exist")


def test_reissue_deactivates_previous_link(service, buyer, seller, store):
    created = create_deal(service, buyer)
    link, url = service.issue_invite(buyer.identity, created.transaction.id)
    assert link.token != created.invite.token
    assert store.get_invite(created.invite.token).is_active is False
    assert store.get_transaction(created.transaction.id).invite_token == link.token

    assert service.resolve_invite(created.invite.token, seller.identity).state == invites.EXPIRED
    tx = service.redeem_invite(seller.identity, link.token)
    assert tx.seller_id == seller.user_id


def test_only_buyer_issues_and_only_while_waiting(service, buyer, seller, outsider):
    created = create_deal(service, buyer, issue_invite=False)
    assert created.invite is None

    with pytest.raises(AuthorizationError):
        service.issue_invite(outsider.identity, created.transaction.id)

    link, _ = service.issue_invite(buyer.identity, created.transaction.id)
    service.redeem_invite(seller.identity, link.token)
    with pytest.raises(InvalidTransition) as exc:
        service.issue_invite(buyer.identity, created.transaction.id)
    assert exc.value.code == "INVALID_STATE"


def test_racing_redeemers_exactly_one_wins(service, buyer, store):
    created = create_deal(service, buyer)
    token = created.invite.token
    racers = [make_user(f"racer{i}") for i in range(8)]
    barrier = threading.Barrier(len(racers))
    winners = []
    losers = []
    lock = threading.Lock()

    def attempt(user):
        barrier.wait()
        try:
            tx = service.redeem_invite(user.identity, token)
        except StaleStateError as e:
            with lock:
                losers.append(e.code)
        else:
            with lock:
                winners.append(tx.seller_id)

    threads = [threading.Thread(target=attempt, args=(u,)) for u in racers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert losers == ["INVITE_ALREADY_USED"] * (len(racers) - 1)
    assert store.get_transaction(created.transaction.id).seller_id == winners[0]


def test_store_redeem_rejects_when_seller_already_set(service, buyer, seller, store, clock):
    created = create_deal(service, buyer)
    tx = store.get_transaction(created.transaction.id)
    # seller attached through another path while the link still looks live
    store._transactions[tx.id] = replace(tx, seller_id=seller.user_id)
    with pytest.raises(StaleStateError):
        store.redeem_invite(created.invite.token, redeemer_id="someone", redeemer_email="s@example.com", now=clock())


def test_invite_page_is_public(client, service, buyer, seller):
    created = create_deal(service, buyer)
    r = client.get(f"/v1/invites/{created.invite.token}")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["state"] == "valid"
    assert Decimal(body["quote"]["buyer_total"]) == Decimal("5250.00")

    r = client.get(f"/v1/invites/{created.invite.token}", headers=auth(buyer))
    assert r.json()["state"] == "own_link"

    r = client.get("/v1/invites/missing")
    assert r.json() == {"state": "invalid", "transaction": None, "quote": None, "expires_at": None}


def test_redeem_over_http(client, service, buyer, seller):
    created = create_deal(service, buyer)
    r = client.post(f"/v1/invites/{created.invite.token}/redeem", headers=auth(seller))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "seller_joined"

    r = client.post(f"/v1/invites/{created.invite.token}/redeem", headers=auth(make_user("late")))
    assert r.status_code == 409
    assert r.json()["detail"] == "INVITE_ALREADY_USED"


def test_expired_invite_over_http_is_gone(client, service, buyer, seller, clock):
    created = create_deal(service, buyer)
    clock.advance(hours=100)
    r = client.post(f"/v1/invites/{created.invite.token}/redeem", headers=auth(seller))
    assert r.status_code == 410
    assert r.json()["detail"] == "INVITE_EXPIRED"
