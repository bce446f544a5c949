import pytest

from app.escrow import notifications
from app.escrow.errors import AuthorizationError, NotFoundError
from app.escrow.events import EventBus
from app.escrow.model import Role
from conftest import auth, create_deal, held_deal, joined_deal


def test_recipients_by_actor_role(service, buyer, seller):
    tx = joined_deal(service, buyer, seller)
    admins = ["admin-1", "admin-2"]

    assert notifications.compute_recipients(tx, Role.BUYER, buyer.user_id, admins) == [
        (seller.user_id, Role.SELLER),
        ("admin-1", Role.ADMIN),
        ("admin-2", Role.ADMIN),
    ]
    assert notifications.compute_recipients(tx, Role.SELLER, seller.user_id, admins) == [
        (buyer.user_id, Role.BUYER),
        ("admin-1", Role.ADMIN),
        ("admin-2", Role.ADMIN),
    ]
    assert notifications.compute_recipients(tx, Role.ADMIN, "admin-1", admins) == [
        (buyer.user_id, Role.BUYER),
        (seller.user_id, Role.SELLER),
    ]
    assert notifications.compute_recipients(tx, Role.SYSTEM, None, admins) == [
        (buyer.user_id, Role.BUYER),
        (seller.user_id, Role.SELLER),
    ]


def test_actor_never_notified_and_no_duplicates(service, buyer, seller):
    tx = joined_deal(service, buyer, seller)
    # the buyer is also an admin
    out = notifications.compute_recipients(tx, Role.BUYER, buyer.user_id, [buyer.user_id, "admin-1", "admin-1"])
    assert out == [(seller.user_id, Role.SELLER), ("admin-1", Role.ADMIN)]


def test_missing_seller_is_skipped(service, buyer):
    tx = create_deal(service, buyer).transaction
    assert notifications.compute_recipients(tx, Role.BUYER, buyer.user_id, []) == []


def test_deep_links_follow_recipient_role():
    assert notifications.deep_link(Role.BUYER, "t1") == "/buyer/transactions/t1"
    assert notifications.deep_link(Role.SELLER, "t1") == "/seller/transactions/t1"
    assert notifications.deep_link(Role.ADMIN, "t1") == "/admin/transactions/t1"


def test_rows_carry_role_specific_links(service, store, buyer, seller, admin):
    tx = held_deal(service, buyer, seller)
    seller_rows = store.list_notifications(seller.user_id)
    admin_rows = store.list_notifications(admin.user_id)
    assert seller_rows and all(n.link == f"/seller/transactions/{tx.id}" for n in seller_rows)
    assert admin_rows and all(n.link == f"/admin/transactions/{tx.id}" for n in admin_rows)
    assert {n.title for n in seller_rows} >= {"Payment received"}


def test_ownership_checks(service, buyer, seller):
    held_deal(service, buyer, seller)
    mine = service.list_notifications(seller.identity)
    assert mine

    with pytest.raises(AuthorizationError):
        service.mark_notification_read(buyer.identity, mine[0].id)
    with pytest.raises(AuthorizationError):
        service.delete_notification(buyer.identity, mine[0].id)
    with pytest.raises(NotFoundError):
        service.mark_notification_read(seller.identity, "missing")

    assert service.mark_notification_read(seller.identity, mine[0].id) == 1
    assert service.mark_notification_read(seller.identity, mine[0].id) == 0
    unread = service.list_notifications(seller.identity, unread_only=True)
    assert mine[0].id not in {n.id for n in unread}


def test_mark_all_and_clear_only_touch_own_rows(service, store, buyer, seller):
    held_deal(service, buyer, seller)
    buyer_count = len(store.list_notifications(buyer.user_id))
    assert buyer_count > 0

    service.mark_all_notifications_read(seller.identity)
    service.clear_notifications(seller.identity)
    assert store.list_notifications(seller.user_id) == []
    assert len(store.list_notifications(buyer.user_id)) == buyer_count
    assert all(not n.read for n in store.list_notifications(buyer.user_id))


def test_notification_endpoints(client, service, buyer, seller):
    held_deal(service, buyer, seller)
    r = client.get("/v1/notifications", headers=auth(seller))
    assert r.status_code == 200, r.text
    rows = r.json()
    assert rows

    r = client.post(f"/v1/notifications/{rows[0]['id']}/read", headers=auth(buyer))
    assert r.status_code == 403
    assert r.json()["detail"] == "NOT_NOTIFICATION_OWNER"

    r = client.post("/v1/notifications/read-all", headers=auth(seller))
    assert r.json()["count"] == len(rows)

    r = client.get("/v1/notifications", params={"unread_only": True}, headers=auth(seller))
    assert r.json() == []

    r = client.delete(f"/v1/notifications/{rows[0]['id']}", headers=auth(seller))
    assert r.json() == {"count": 1}
    r = client.delete("/v1/notifications", headers=auth(seller))
    assert r.json() == {"count": len(rows) - 1}


def test_fan_out_failure_is_swallowed(service, store, buyer, seller, monkeypatch):
    tx = joined_deal(service, buyer, seller)

    def broken(items):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(store, "insert_notifications", broken)
    out = notifications.fan_out(
        store, service.bus, tx, actor_role=Role.BUYER, actor_id=buyer.user_id, title="t", message="m"
    )
    assert out == []


def test_event_bus_isolates_subscribers():
    bus = EventBus()
    seen = []

    def bad(topic, payload):
        raise ValueError("subscriber bug")

    bus.subscribe("transaction.updated", bad)
    unsubscribe = bus.subscribe("transaction.updated", lambda t, p: seen.append(p))
    bus.publish("transaction.updated", {"transaction_id": "t1"})
    assert seen == [{"transaction_id": "t1"}]

    unsubscribe()
    bus.publish("transaction.updated", {"transaction_id": "t2"})
    assert seen == [{"transaction_id": "t1"}]
