"""
Order ledger

Orders move along two axes: a lifecycle status (pending, shipped,
delivered, completed, cancelled) and a payment status (unpaid, paid).
The unpaid -> paid swap is a single conditional update on the stored
payment status, and only the request that wins it decrements the book's
stock. Replays and concurrent confirmations leave stock alone.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from auth import user_role
from catalog import load_book
from database import create_document, get_document_by_id, get_documents, parse_id, to_str_id
from errors import (AuthorizationError, ConflictError, NotFoundError, PartialCompletionError,
                    ValidationError)
from schemas import BookStatus, Order, OrderCreate, OrderStatus, OrderUpdate, PaymentStatus, Role

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.SHIPPED.value, OrderStatus.COMPLETED.value,
                                OrderStatus.CANCELLED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value, OrderStatus.COMPLETED.value,
                                OrderStatus.CANCELLED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.COMPLETED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}


def check_transition(current: str, target: str):
    if current == target:
        return
    if target not in TRANSITIONS.get(current, set()):
        raise ConflictError(f"Order cannot move from {current} to {target}")


# ------------------------- Reads -------------------------

def populate(database, orders: List[dict]) -> List[dict]:
    """Join each order's book document in as `book`."""
    ids = set()
    for o in orders:
        try:
            ids.add(ObjectId(o.get("bookId")))
        except (InvalidId, TypeError):
            continue
    books = {}
    if ids:
        for b in database["book"].find({"_id": {"$in": list(ids)}}):
            books[str(b["_id"])] = to_str_id(b)
    result = []
    for o in orders:
        d = to_str_id(o)
        d["book"] = books.get(o.get("bookId"))
        result.append(d)
    return result


def load_order(database, order_id: str) -> dict:
    doc = get_document_by_id(database, "order", parse_id(order_id, "Order ID"))
    if not doc:
        raise NotFoundError("Order not found")
    return doc


def owns_book_of(database, user: dict, order: dict) -> bool:
    if user_role(user) is not Role.LIBRARIAN:
        return False
    book = get_document_by_id(database, "book", order.get("bookId"))
    return bool(book) and book.get("addedByEmail") == user["email"]


def can_view(database, user: dict, order: dict) -> bool:
    if order.get("email") == user["email"] or user_role(user) is Role.ADMIN:
        return True
    return owns_book_of(database, user, order)


def list_orders_for(database, user: dict) -> List[dict]:
    role = user_role(user)
    if role is Role.ADMIN:
        filter_dict = {}
    elif role is Role.LIBRARIAN:
        owned = get_documents(database, "book", {"addedByEmail": user["email"]})
        filter_dict = {"bookId": {"$in": [str(b["_id"]) for b in owned]}}
    else:
        filter_dict = {"email": user["email"]}
    return populate(database, get_documents(database, "order", filter_dict, sort=[("createdAt", -1)]))


def list_orders_by_email(database, email: str, user: dict) -> List[dict]:
    email = email.lower()
    if email != user["email"] and user_role(user) is not Role.ADMIN:
        raise AuthorizationError("Cannot list another user's orders")
    return populate(database, get_documents(database, "order", {"email": email}, sort=[("createdAt", -1)]))


def get_order_for(database, order_id: str, user: dict) -> dict:
    order = load_order(database, order_id)
    if not can_view(database, user, order):
        raise AuthorizationError("Not allowed to view this order")
    return populate(database, [order])[0]


# ------------------------- Writes -------------------------

def create_order(database, payload: OrderCreate, user: dict) -> dict:
    book = load_book(database, payload.book_id)
    if book.get("status") != BookStatus.PUBLISHED.value:
        raise ValidationError("bookId: book is not available for purchase")
    if book.get("quantity", 0) < 1:
        raise ConflictError("Book is out of stock")
    order = Order(
        book_id=str(book["_id"]),
        book_title=book["title"],
        email=user["email"],
        name=payload.name or user.get("name", ""),
        phone=payload.phone,
        address=payload.address,
        price=book["price"],
    )
    order_id = create_document(database, "order", order)
    logger.info("Order %s placed by %s for book %s", order_id, user["email"], order.book_id)
    return populate(database, [get_document_by_id(database, "order", order_id)])[0]


def mark_paid(database, order_id: str, transaction_id: Optional[str] = None) -> dict:
    """Swap unpaid -> paid and take one copy out of stock. Idempotent."""
    oid = parse_id(order_id, "Order ID")
    now = datetime.now(timezone.utc)
    fields = {"paymentStatus": PaymentStatus.PAID.value, "paidAt": now, "updatedAt": now}
    if transaction_id:
        fields["transactionId"] = transaction_id

    order = database["order"].find_one_and_update(
        {"_id": oid, "paymentStatus": PaymentStatus.UNPAID.value,
         "status": {"$ne": OrderStatus.CANCELLED.value}},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        current = database["order"].find_one({"_id": oid})
        if current is None:
            raise NotFoundError("Order not found")
        if current.get("paymentStatus") == PaymentStatus.PAID.value:
            logger.info("Order %s already paid, stock left unchanged", order_id)
            return current
        raise ConflictError("A cancelled order cannot be paid")

    try:
        book_oid = ObjectId(order["bookId"])
        res = database["book"].update_one(
            {"_id": book_oid, "quantity": {"$gte": 1}},
            {"$inc": {"quantity": -1}, "$set": {"updatedAt": now}},
        )
    except (InvalidId, PyMongoError):
        logger.exception("Order %s marked paid but stock decrement failed", order_id)
        raise PartialCompletionError("Order marked paid but stock was not adjusted")

    if res.matched_count == 0:
        database["order"].update_one(
            {"_id": oid, "paymentStatus": PaymentStatus.PAID.value},
            {"$set": {"paymentStatus": PaymentStatus.UNPAID.value, "updatedAt": now},
             "$unset": {"paidAt": "", "transactionId": ""}},
        )
        if database["book"].find_one({"_id": book_oid}) is None:
            raise NotFoundError("Book not found")
        logger.warning("Order %s rejected, book %s out of stock (transaction %s)",
                       order_id, order["bookId"], transaction_id)
        raise ConflictError("Book is out of stock")

    logger.info("Order %s paid, stock of book %s decremented", order_id, order["bookId"])
    return order


def update_order(database, order_id: str, payload: OrderUpdate, user: dict) -> dict:
    order = load_order(database, order_id)
    role = user_role(user)
    is_purchaser = order.get("email") == user["email"]
    manages = role is Role.ADMIN or owns_book_of(database, user, order)
    if not (is_purchaser or manages):
        raise AuthorizationError("Not allowed to update this order")

    if payload.status is None and payload.payment_status is None:
        raise ValidationError("status or paymentStatus is required")

    if payload.payment_status == PaymentStatus.PAID.value and role is not Role.ADMIN:
        raise AuthorizationError("Payments are confirmed through the payment provider")
    if (payload.payment_status == PaymentStatus.UNPAID.value
            and order.get("paymentStatus") == PaymentStatus.PAID.value):
        raise ConflictError("A paid order cannot be marked unpaid")

    current = order.get("status", OrderStatus.PENDING.value)
    target = payload.status
    if target is not None:
        if not manages and target != OrderStatus.CANCELLED.value:
            raise AuthorizationError("Customers can only cancel their orders")
        if not manages and order.get("paymentStatus") == PaymentStatus.PAID.value:
            raise ConflictError("Paid orders cannot be cancelled by the customer")
        check_transition(current, target)
        if target == OrderStatus.CANCELLED.value and payload.payment_status == PaymentStatus.PAID.value:
            raise ConflictError("A cancelled order cannot be paid")

    if payload.payment_status == PaymentStatus.PAID.value:
        mark_paid(database, order_id)

    if target is not None and target != current:
        res = database["order"].update_one(
            {"_id": order["_id"], "status": current},
            {"$set": {"status": target, "updatedAt": datetime.now(timezone.utc)}},
        )
        if res.matched_count == 0:
            raise ConflictError("Order changed while updating, retry")
        logger.info("Order %s moved %s -> %s by %s", order_id, current, target, user["email"])

    return populate(database, [load_order(database, order_id)])[0]
