"""
Catalog operations: books, their owners, reviews and the delete cascade.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from auth import user_role
from database import (create_document, delete_document, get_document_by_id, get_documents,
                      parse_id, to_str_id, update_document)
from errors import AuthorizationError, NotFoundError, ValidationError
from schemas import Book, BookCreate, BookStatus, BookUpdate, Review, ReviewCreate, Role

logger = logging.getLogger(__name__)


def can_manage(user: Optional[dict], book: dict) -> bool:
    if user is None:
        return False
    if user_role(user) is Role.ADMIN:
        return True
    return user_role(user) is Role.LIBRARIAN and book.get("addedByEmail") == user["email"]


def create_book(database, payload: BookCreate, owner: dict) -> dict:
    book = Book(**payload.model_dump(), added_by_email=owner["email"])
    book_id = create_document(database, "book", book)
    logger.info("Book %s added by %s", book_id, owner["email"])
    return to_str_id(get_document_by_id(database, "book", book_id))


def list_published(database, q: Optional[str] = None, category: Optional[str] = None, limit: int = 50):
    filter_dict = {"status": BookStatus.PUBLISHED.value}
    if category:
        filter_dict["category"] = category
    if q:
        filter_dict["title"] = {"$regex": re.escape(q), "$options": "i"}
    docs = get_documents(database, "book", filter_dict, limit, sort=[("createdAt", -1)])
    return [to_str_id(d) for d in docs]


def list_owned(database, owner: dict):
    docs = get_documents(database, "book", {"addedByEmail": owner["email"]}, sort=[("createdAt", -1)])
    return [to_str_id(d) for d in docs]


def list_all(database):
    return [to_str_id(d) for d in get_documents(database, "book", sort=[("createdAt", -1)])]


def load_book(database, book_id: str) -> dict:
    doc = get_document_by_id(database, "book", parse_id(book_id, "Book ID"))
    if not doc:
        raise NotFoundError("Book not found")
    return doc


def get_visible_book(database, book_id: str, user: Optional[dict]) -> dict:
    doc = load_book(database, book_id)
    # Unpublished books are hidden from everyone but their managers
    if doc.get("status") != BookStatus.PUBLISHED.value and not can_manage(user, doc):
        raise NotFoundError("Book not found")
    return to_str_id(doc)


def update_book(database, book_id: str, payload: BookUpdate, user: dict) -> dict:
    doc = load_book(database, book_id)
    if not can_manage(user, doc):
        raise AuthorizationError("Only the owner or an admin can edit this book")
    changes = payload.model_dump(by_alias=True, exclude_none=True, mode="json")
    if not changes:
        raise ValidationError("No fields to update")
    update_document(database, "book", doc["_id"], changes)
    logger.info("Book %s updated by %s: %s", book_id, user["email"], ", ".join(sorted(changes)))
    return to_str_id(get_document_by_id(database, "book", doc["_id"]))


def delete_book(database, book_id: str) -> dict:
    oid = parse_id(book_id, "Book ID")
    if not delete_document(database, "book", oid):
        raise NotFoundError("Book not found")
    orders = database["order"].delete_many({"bookId": str(oid)})
    wishlist = database["wishlist"].delete_many({"bookId": str(oid)})
    logger.info("Book %s deleted with %d orders and %d wishlist entries",
                book_id, orders.deleted_count, wishlist.deleted_count)
    return {"deleted": True, "ordersDeleted": orders.deleted_count,
            "wishlistDeleted": wishlist.deleted_count}


def add_review(database, book_id: str, payload: ReviewCreate, user: dict) -> dict:
    oid = parse_id(book_id, "Book ID")
    review = Review(reviewer_email=user["email"], reviewer_name=user.get("name", ""),
                    rating=payload.rating, comment=payload.comment)
    entry = review.model_dump(by_alias=True, mode="json")
    entry["createdAt"] = datetime.now(timezone.utc)
    res = database["book"].update_one({"_id": oid}, {"$push": {"reviews": entry}})
    if res.matched_count == 0:
        raise NotFoundError("Book not found")
    return to_str_id(get_document_by_id(database, "book", oid))
