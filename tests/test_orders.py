import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import ledger
from errors import ConflictError


def stock(db, book_id):
    return db["book"].find_one({"_id": ObjectId(book_id)})["quantity"]


def test_purchaser_comes_from_token(client, make_user, make_book, place_order):
    reader = make_user("reader@example.com", name="Reader")
    book_id = make_book(title="X", price=9.99)
    res = client.post("/api/orders", json={"bookId": book_id, "email": "someone@else.com",
                                           "phone": "1", "address": "A"}, headers=reader)
    # unknown fields are ignored, the purchaser is the caller
    assert res.status_code == 201
    order = res.json()
    assert order["email"] == "reader@example.com"
    assert order["status"] == "pending"
    assert order["paymentStatus"] == "unpaid"
    assert order["bookTitle"] == "X"
    assert order["price"] == 9.99
    assert order["book"]["id"] == book_id


def test_order_creation_requires_user_role(client, make_user, make_book):
    lib = make_user("lib@example.com", role="librarian")
    book_id = make_book()
    res = client.post("/api/orders", json={"bookId": book_id, "phone": "1", "address": "A"}, headers=lib)
    assert res.status_code == 403


def test_order_for_missing_or_unpublished_book(client, make_user, make_book):
    reader = make_user("reader@example.com")
    draft = make_book(status="unpublished")
    body = {"phone": "1", "address": "A"}
    assert client.post("/api/orders", json={**body, "bookId": str(ObjectId())}, headers=reader).status_code == 404
    assert client.post("/api/orders", json={**body, "bookId": draft}, headers=reader).status_code == 400


def test_order_for_out_of_stock_book_is_409(client, make_user, make_book):
    reader = make_user("reader@example.com")
    book_id = make_book(quantity=0)
    res = client.post("/api/orders", json={"bookId": book_id, "phone": "1", "address": "A"}, headers=reader)
    assert res.status_code == 409


def test_paid_and_completed_decrements_stock_once(client, db, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    admin = make_user("admin@example.com", role="admin")
    book_id = make_book(title="X", quantity=1)
    order = place_order(book_id, reader)

    patch = {"paymentStatus": "paid", "status": "completed"}
    res = client.patch(f"/api/orders/{order['id']}", json=patch, headers=admin)
    assert res.status_code == 200
    assert res.json()["paymentStatus"] == "paid"
    assert res.json()["status"] == "completed"
    assert stock(db, book_id) == 0

    again = client.patch(f"/api/orders/{order['id']}", json=patch, headers=admin)
    assert again.status_code == 200
    assert stock(db, book_id) == 0


def test_mark_paid_replay_decrements_by_exactly_one(db, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    book_id = make_book(quantity=5)
    order = place_order(book_id, reader)

    ledger.mark_paid(db, order["id"], transaction_id="pi_1")
    ledger.mark_paid(db, order["id"], transaction_id="pi_1")
    assert stock(db, book_id) == 4
    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["paymentStatus"] == "paid"
    assert stored["transactionId"] == "pi_1"


def test_mark_paid_without_stock_reverts(db, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    book_id = make_book(quantity=1)
    first = place_order(book_id, reader)
    second = place_order(book_id, reader)

    ledger.mark_paid(db, first["id"])
    with pytest.raises(ConflictError):
        ledger.mark_paid(db, second["id"])
    assert stock(db, book_id) == 0
    assert db["order"].find_one({"_id": ObjectId(second["id"])})["paymentStatus"] == "unpaid"


def test_cancelled_order_cannot_be_paid(db, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    book_id = make_book(quantity=3)
    order = place_order(book_id, reader)
    db["order"].update_one({"_id": ObjectId(order["id"])}, {"$set": {"status": "cancelled"}})
    with pytest.raises(ConflictError):
        ledger.mark_paid(db, order["id"])
    assert stock(db, book_id) == 3


def test_customer_cannot_mark_own_order_paid(client, db, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    book_id = make_book(quantity=2)
    order = place_order(book_id, reader)
    res = client.patch(f"/api/orders/{order['id']}", json={"paymentStatus": "paid"}, headers=reader)
    assert res.status_code == 403
    assert stock(db, book_id) == 2


def test_owning_librarian_cannot_mark_paid_but_can_ship(client, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    lib = make_user("lib@example.com", role="librarian")
    book_id = make_book(owner="lib@example.com")
    order = place_order(book_id, reader)
    assert client.patch(f"/api/orders/{order['id']}", json={"paymentStatus": "paid"},
                        headers=lib).status_code == 403
    res = client.patch(f"/api/orders/{order['id']}", json={"status": "shipped"}, headers=lib)
    assert res.status_code == 200
    assert res.json()["status"] == "shipped"


def test_customer_can_cancel_pending_order_only(client, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    book_id = make_book()
    order = place_order(book_id, reader)
    assert client.patch(f"/api/orders/{order['id']}", json={"status": "shipped"},
                        headers=reader).status_code == 403
    res = client.patch(f"/api/orders/{order['id']}", json={"status": "cancelled"}, headers=reader)
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"


def test_terminal_states_do_not_move(client, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    admin = make_user("admin@example.com", role="admin")
    order = place_order(make_book(), reader)
    client.patch(f"/api/orders/{order['id']}", json={"status": "cancelled"}, headers=reader)
    res = client.patch(f"/api/orders/{order['id']}", json={"status": "shipped"}, headers=admin)
    assert res.status_code == 409
    res = client.patch(f"/api/orders/{order['id']}", json={"paymentStatus": "paid"}, headers=admin)
    assert res.status_code == 409


def test_paid_order_cannot_be_unpaid(client, db, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    admin = make_user("admin@example.com", role="admin")
    order = place_order(make_book(quantity=3), reader)
    ledger.mark_paid(db, order["id"])
    res = client.patch(f"/api/orders/{order['id']}", json={"paymentStatus": "unpaid"}, headers=admin)
    assert res.status_code == 409


def test_invalid_status_value_is_400(client, make_user, make_book, place_order):
    reader = make_user("reader@example.com")
    admin = make_user("admin@example.com", role="admin")
    order = place_order(make_book(), reader)
    res = client.patch(f"/api/orders/{order['id']}", json={"status": "lost"}, headers=admin)
    assert res.status_code == 400
    assert "status" in res.json()["error"]


def test_fetch_other_users_order_is_403(client, make_user, make_book, place_order):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    order = place_order(make_book(), alice)
    assert client.get(f"/api/orders/{order['id']}", headers=bob).status_code == 403
    own = client.get(f"/api/orders/{order['id']}", headers=alice)
    assert own.status_code == 200
    assert own.json()["id"] == order["id"]


def test_fetch_unknown_order(client, make_user):
    alice = make_user("alice@example.com")
    assert client.get(f"/api/orders/{ObjectId()}", headers=alice).status_code == 404
    assert client.get("/api/orders/bogus", headers=alice).status_code == 400


def test_listing_is_scoped_by_role(client, make_user, make_book, place_order):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    lib = make_user("lib@example.com", role="librarian")
    admin = make_user("admin@example.com", role="admin")
    libs_book = make_book(title="Lib's", owner="lib@example.com", quantity=5)
    other_book = make_book(title="Other's", owner="other@example.com", quantity=5)
    place_order(libs_book, alice)
    place_order(other_book, alice)
    place_order(other_book, bob)

    assert len(client.get("/api/orders", headers=alice).json()) == 2
    assert len(client.get("/api/orders", headers=bob).json()) == 1
    lib_view = client.get("/api/orders", headers=lib).json()
    assert [o["bookTitle"] for o in lib_view] == ["Lib's"]
    assert len(client.get("/api/orders", headers=admin).json()) == 3


def test_orders_by_email_is_self_or_admin(client, make_user, make_book, place_order):
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    admin = make_user("admin@example.com", role="admin")
    place_order(make_book(), alice)
    assert len(client.get("/api/orders/user/alice@example.com", headers=alice).json()) == 1
    assert client.get("/api/orders/user/alice@example.com", headers=bob).status_code == 403
    assert len(client.get("/api/orders/user/alice@example.com", headers=admin).json()) == 1


def test_stock_failure_after_payment_is_partial_completion(client, db, make_user, make_book, place_order,
                                                           monkeypatch):
    reader = make_user("reader@example.com")
    admin = make_user("admin@example.com", role="admin")
    book_id = make_book(quantity=2)
    order = place_order(book_id, reader)

    original = mongomock.Collection.update_one

    def failing_update_one(self, filter, update, *args, **kwargs):
        if self.name == "book":
            raise PyMongoError("connection reset")
        return original(self, filter, update, *args, **kwargs)

    monkeypatch.setattr(mongomock.Collection, "update_one", failing_update_one)
    res = client.patch(f"/api/orders/{order['id']}", json={"paymentStatus": "paid"}, headers=admin)
    monkeypatch.undo()

    assert res.status_code == 500
    assert res.json()["code"] == "partial_completion"
    assert db["order"].find_one({"_id": ObjectId(order["id"])})["paymentStatus"] == "paid"
    assert stock(db, book_id) == 2
