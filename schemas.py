"""
Database Schemas

MongoDB collection schemas for BookCourier as Pydantic models.
Each document model maps to a collection named after the lowercase class:
- User -> "user" collection
- Book -> "book" collection
- Order -> "order" collection
- WishlistEntry -> "wishlist" collection

Documents are stored with camelCase keys (bookId, paymentStatus, ...), the
same shape the HTTP API speaks. Request bodies accept either spelling.
"""

from enum import Enum
from typing import Optional, List, Iterable

from pydantic import BaseModel, ConfigDict, Field, EmailStr, StrictInt
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    USER = "user"
    LIBRARIAN = "librarian"
    ADMIN = "admin"

    def satisfies(self, required: Iterable["Role"]) -> bool:
        """Admin stands in for librarian; no other role implies another."""
        required = {Role(r) for r in required}
        if self in required:
            return True
        return self is Role.ADMIN and Role.LIBRARIAN in required


class BookStatus(str, Enum):
    PUBLISHED = "published"
    UNPUBLISHED = "unpublished"


class OrderStatus(str, Enum):
    PENDING = "pending"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)


# ----------------------------- Collections -----------------------------

class User(Document):
    email: EmailStr = Field(..., description="Unique identity key")
    name: str = Field("", description="Display name")
    photo: Optional[str] = Field(None, description="Avatar URL")
    role: Role = Field(Role.USER, description="Role for access control")
    provider: Optional[str] = Field(None, description="Auth provider tag, e.g. 'password', 'google'")
    password_hash: Optional[str] = Field(None, description="pbkdf2 hash for password accounts")


class Review(Document):
    reviewer_email: str
    reviewer_name: str = ""
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class Book(Document):
    title: str = Field(..., min_length=1, description="Book title")
    author: Optional[str] = Field(None, description="Author name")
    description: Optional[str] = None
    image: Optional[str] = Field(None, description="Cover image URL")
    price: float = Field(..., ge=0, description="Unit price")
    category: Optional[str] = None
    quantity: int = Field(1, ge=0, description="Copies in stock")
    status: BookStatus = Field(BookStatus.PUBLISHED, description="Publication status")
    added_by_email: Optional[str] = Field(None, description="Owning librarian")
    reviews: List[dict] = Field(default_factory=list)


class Order(Document):
    book_id: str = Field(..., description="Referenced Book _id as string")
    book_title: str = Field(..., description="Snapshot of book title")
    email: str = Field(..., description="Purchaser email")
    name: str = ""
    phone: Optional[str] = None
    address: Optional[str] = None
    price: float = Field(..., ge=0, description="Unit price at time of order")
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    transaction_id: Optional[str] = None


class WishlistEntry(Document):
    user_email: str
    book_id: str


# ----------------------------- Request bodies -----------------------------

class BookCreate(Document):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1)
    author: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    category: Optional[str] = None
    quantity: int = Field(1, ge=0)
    status: BookStatus = BookStatus.PUBLISHED


class BookUpdate(Document):
    # Owner is fixed at creation; unknown keys such as addedByEmail are rejected
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0)
    status: Optional[BookStatus] = None


class ReviewCreate(Document):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class OrderCreate(Document):
    book_id: str
    name: Optional[str] = None
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)


class OrderUpdate(Document):
    model_config = ConfigDict(extra="forbid")

    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None


class WishlistAdd(Document):
    book_id: str


class UserBootstrap(Document):
    name: str = ""
    photo: Optional[str] = None
    provider: Optional[str] = None


class RoleUpdate(Document):
    role: Role


class RegisterRequest(Document):
    email: EmailStr
    name: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6)
    photo: Optional[str] = None


class LoginRequest(Document):
    email: EmailStr
    password: str


class PaymentIntentRequest(Document):
    amount: StrictInt = Field(..., gt=0, description="Amount in minor currency units")
    currency: Optional[str] = None
    order_id: Optional[str] = None


class ConfirmPaymentRequest(Document):
    payment_intent_id: str = Field(..., min_length=1)
