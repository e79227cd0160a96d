import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError, PyMongoError

import catalog
import database
import ledger
import payments
from auth import (bootstrap_user, create_access_token, find_user, get_current_user,
                  get_optional_user, get_verified_email, hash_password, require_roles,
                  verify_password)
from config import Config
from database import get_db, get_document_by_id, get_documents, parse_id, to_str_id, update_document
from errors import APIError, AuthenticationError, NotFoundError
from payments import get_payment_gateway
from schemas import (BookCreate, BookUpdate, ConfirmPaymentRequest, LoginRequest, OrderCreate,
                     OrderUpdate, PaymentIntentRequest, RegisterRequest, ReviewCreate, Role,
                     RoleUpdate, UserBootstrap, WishlistAdd)

logging.basicConfig(level=Config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="BookCourier API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------- Error handlers ---------------------
@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"error": message, "code": "validation_error"})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Database error", "code": "dependency_error"})


# ------------------------- Lifecycle --------------------------
@app.on_event("startup")
def startup():
    if database.db is None:
        database.init_db()
    payments.get_payment_gateway()
    ensure_admin_exists(database.db)


@app.on_event("shutdown")
def shutdown():
    database.close_db()


def ensure_admin_exists(db):
    # Create a default admin if configured and none exists
    if not Config.ADMIN_EMAIL or not Config.ADMIN_PASSWORD:
        return
    if db["user"].count_documents({"role": Role.ADMIN.value}) > 0:
        return
    user, _ = bootstrap_user(db, Config.ADMIN_EMAIL, name="Admin", provider="password",
                             password_hash=hash_password(Config.ADMIN_PASSWORD))
    update_document(db, "user", user["_id"], {"role": Role.ADMIN.value})
    logger.info("Seeded admin %s", user["email"])


# ------------------------- Basic Routes -----------------------
@app.get("/")
def root():
    return {"message": "BookCourier Backend Running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    db = database.db
    if db is not None:
        response["database"] = "✅ Available"
        response["database_name"] = db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# ------------------------- Auth Endpoints ---------------------
@app.post("/api/auth/register")
def register(payload: RegisterRequest, db=Depends(get_db)):
    user, created = bootstrap_user(db, payload.email, name=payload.name, photo=payload.photo,
                                   provider="password", password_hash=hash_password(payload.password))
    return JSONResponse(status_code=201 if created else 200, content=jsonable_encoder(to_str_id(user)))


@app.post("/api/auth/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user = find_user(db, payload.email)
    if not user or not verify_password(payload.password, user.get("passwordHash")):
        logger.warning("Failed sign-in for %s", payload.email)
        raise AuthenticationError("Invalid credentials")
    token = create_access_token({"sub": user["email"], "role": user.get("role")})
    return {"token": token, "user": to_str_id(user)}


# ------------------------- Users ------------------------------
@app.post("/api/users")
def upsert_user(payload: UserBootstrap, email: str = Depends(get_verified_email), db=Depends(get_db)):
    user, created = bootstrap_user(db, email, name=payload.name, photo=payload.photo,
                                   provider=payload.provider)
    return JSONResponse(status_code=201 if created else 200, content=jsonable_encoder(to_str_id(user)))


@app.get("/api/users/me")
def read_me(user: dict = Depends(get_current_user)):
    return to_str_id(user)


@app.get("/api/users")
def list_users(admin: dict = Depends(require_roles(Role.ADMIN)), db=Depends(get_db)):
    return [to_str_id(u) for u in get_documents(db, "user", sort=[("createdAt", -1)])]


@app.patch("/api/users/{user_id}")
def change_role(user_id: str, payload: RoleUpdate, admin: dict = Depends(require_roles(Role.ADMIN)),
                db=Depends(get_db)):
    oid = parse_id(user_id, "User ID")
    if not update_document(db, "user", oid, {"role": payload.role}):
        raise NotFoundError("User not found")
    user = get_document_by_id(db, "user", oid)
    logger.info("%s set role of %s to %s", admin["email"], user["email"], payload.role)
    return to_str_id(user)


# ------------------------- Books ------------------------------
@app.get("/api/books")
def list_books(q: Optional[str] = None, category: Optional[str] = None, limit: int = Query(50, ge=1, le=200),
               db=Depends(get_db)):
    return catalog.list_published(db, q=q, category=category, limit=limit)


@app.get("/api/books/mine")
def list_my_books(user: dict = Depends(require_roles(Role.LIBRARIAN)), db=Depends(get_db)):
    return catalog.list_owned(db, user)


@app.get("/api/books/all")
def list_all_books(admin: dict = Depends(require_roles(Role.ADMIN)), db=Depends(get_db)):
    return catalog.list_all(db)


@app.get("/api/books/{book_id}")
def get_book(book_id: str, user: Optional[dict] = Depends(get_optional_user), db=Depends(get_db)):
    return catalog.get_visible_book(db, book_id, user)


@app.post("/api/books", status_code=201)
def create_book(payload: BookCreate, user: dict = Depends(require_roles(Role.LIBRARIAN)), db=Depends(get_db)):
    return catalog.create_book(db, payload, user)


@app.patch("/api/books/{book_id}")
def update_book(book_id: str, payload: BookUpdate, user: dict = Depends(require_roles(Role.LIBRARIAN)),
                db=Depends(get_db)):
    return catalog.update_book(db, book_id, payload, user)


@app.delete("/api/books/{book_id}")
def delete_book(book_id: str, admin: dict = Depends(require_roles(Role.ADMIN)), db=Depends(get_db)):
    return catalog.delete_book(db, book_id)


@app.post("/api/books/{book_id}/reviews", status_code=201)
def add_review(book_id: str, payload: ReviewCreate, user: dict = Depends(require_roles(Role.USER)),
               db=Depends(get_db)):
    return catalog.add_review(db, book_id, payload, user)


# ------------------------- Orders -----------------------------
@app.get("/api/orders")
def list_orders(user: dict = Depends(get_current_user), db=Depends(get_db)):
    return ledger.list_orders_for(db, user)


@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, user: dict = Depends(require_roles(Role.USER)), db=Depends(get_db)):
    return ledger.create_order(db, payload, user)


@app.get("/api/orders/user/{email}")
def list_user_orders(email: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return ledger.list_orders_by_email(db, email, user)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return ledger.get_order_for(db, order_id, user)


@app.patch("/api/orders/{order_id}")
def update_order(order_id: str, payload: OrderUpdate, user: dict = Depends(get_current_user),
                 db=Depends(get_db)):
    return ledger.update_order(db, order_id, payload, user)


@app.post("/api/orders/{order_id}/confirm-payment")
def confirm_payment(order_id: str, payload: ConfirmPaymentRequest, user: dict = Depends(get_current_user),
                    db=Depends(get_db), gateway=Depends(get_payment_gateway)):
    return payments.confirm_order_payment(db, gateway, order_id, payload.payment_intent_id, user)


# ------------------------- Payments ---------------------------
@app.post("/api/create-payment-intent")
def create_payment_intent(payload: PaymentIntentRequest, user: dict = Depends(get_current_user),
                          db=Depends(get_db), gateway=Depends(get_payment_gateway)):
    return payments.create_payment_intent(db, gateway, payload.amount, user,
                                          currency=payload.currency, order_id=payload.order_id)


# ------------------------- Wishlist ---------------------------
@app.get("/api/wishlist")
def list_wishlist(user: dict = Depends(require_roles(Role.USER)), db=Depends(get_db)):
    entries = get_documents(db, "wishlist", {"userEmail": user["email"]}, sort=[("createdAt", -1)])
    return ledger.populate(db, entries)


@app.post("/api/wishlist")
def add_to_wishlist(payload: WishlistAdd, user: dict = Depends(require_roles(Role.USER)), db=Depends(get_db)):
    book = catalog.load_book(db, payload.book_id)
    key = {"userEmail": user["email"], "bookId": str(book["_id"])}
    try:
        res = db["wishlist"].update_one(key, {"$setOnInsert": {**key, "createdAt": datetime.now(timezone.utc)}},
                                        upsert=True)
        created = res.upserted_id is not None
    except DuplicateKeyError:
        # Lost an upsert race with the same pair
        created = False
    entry = ledger.populate(db, [db["wishlist"].find_one(key)])[0]
    return JSONResponse(status_code=201 if created else 200, content=jsonable_encoder(entry))


@app.delete("/api/wishlist/{book_id}")
def remove_from_wishlist(book_id: str, user: dict = Depends(require_roles(Role.USER)), db=Depends(get_db)):
    oid = parse_id(book_id, "Book ID")
    res = db["wishlist"].delete_one({"userEmail": user["email"], "bookId": str(oid)})
    if res.deleted_count == 0:
        raise NotFoundError("Wishlist entry not found")
    return {"deleted": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
