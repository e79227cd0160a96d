import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from auth import bootstrap_user, create_access_token
from database import create_document
from errors import ValidationError
from payments import get_payment_gateway


class FakeGateway:
    """Records intents instead of calling Stripe."""

    def __init__(self):
        self.created = []
        self.intents = {}

    def create_intent(self, amount, currency, metadata=None):
        intent_id = f"pi_test_{len(self.created) + 1}"
        self.created.append({"amount": amount, "currency": currency, "metadata": metadata or {}})
        self.intents[intent_id] = {
            "id": intent_id,
            "status": "succeeded",
            "amount": amount,
            "currency": currency,
            "metadata": dict(metadata or {}),
        }
        return {"id": intent_id, "client_secret": f"{intent_id}_secret_xyz"}

    def retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise ValidationError("paymentIntentId: unknown payment intent")
        return self.intents[intent_id]


@pytest.fixture
def db():
    database.init_db(client=mongomock.MongoClient(), name="bookcourier_test")
    yield database.db
    database.close_db()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    main.app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth_header(email):
    return {"Authorization": f"Bearer {create_access_token({'sub': email})}"}


@pytest.fixture
def make_user(db):
    def _make(email, role="user", name="Reader"):
        bootstrap_user(db, email, name=name)
        db["user"].update_one({"email": email}, {"$set": {"role": role}})
        return auth_header(email)
    return _make


@pytest.fixture
def make_book(db):
    def _make(title="Dune", price=12.5, quantity=1, status="published", owner="lib@example.com"):
        book_id = create_document(db, "book", {
            "title": title,
            "author": "Frank Herbert",
            "price": price,
            "quantity": quantity,
            "status": status,
            "addedByEmail": owner,
            "reviews": [],
        })
        return book_id
    return _make


@pytest.fixture
def place_order(client):
    def _place(book_id, headers):
        res = client.post("/api/orders", json={"bookId": book_id, "phone": "555-0100", "address": "1 Main St"},
                          headers=headers)
        assert res.status_code == 201, res.text
        return res.json()
    return _place
