"""Pytest fixtures for the storefront tests."""

from datetime import timedelta
from decimal import Decimal

import pytest

from core import create_app, db, Book, GiftCard, ShareableList, User, utcnow
from errors import ProcessorError
from payments import to_cents


class FakeProcessor:
    """Stands in for StripeClient; intents live in a dict."""

    configured = True

    def __init__(self):
        self.intents = {}
        self.fail_next = False

    def create_payment_intent(self, amount, currency, metadata=None):
        if self.fail_next:
            self.fail_next = False
            raise ProcessorError("Payment processor rejected the request")
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret",
            "amount": to_cents(amount),
            "amount_received": 0,
            "currency": currency,
            "status": "requires_payment_method",
            "metadata": dict(metadata or {}),
        }
        return self.intents[intent_id]

    def retrieve_payment_intent(self, intent_id):
        return self.intents[intent_id]

    def succeed(self, intent_id):
        intent = self.intents[intent_id]
        intent["status"] = "succeeded"
        intent["amount_received"] = intent["amount"]
        return intent


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def app(processor):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "SEED_DEMO_DATA": False,
        "ADMIN_PASSWORD": "letmein",
        "STRIPE_WEBHOOK_SECRET": "whsec_test",
        "PAYMENT_PROCESSOR": processor,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(client):
    resp = client.post("/admin/login", json={"password": "letmein"})
    assert resp.status_code == 200
    return client


@pytest.fixture
def owner(app):
    user = User(email="reader@example.com", username="reader", display_name="Avid Reader")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def books(owner):
    """Two $10.00 books and one $40.00 book on the owner's wishlist."""
    now = utcnow()
    rows = [
        Book(user_id=owner.id, title="Dune", author="Frank Herbert", priority=2,
             retail_price=Decimal("10.00"), date_added=now - timedelta(days=3)),
        Book(user_id=owner.id, title="Emma", author="Jane Austen", priority=1,
             list_price=Decimal("10.00"), date_added=now - timedelta(days=2)),
        Book(user_id=owner.id, title="Middlemarch", author="George Eliot",
             retail_price=Decimal("40.00"), date_added=now - timedelta(days=1)),
    ]
    db.session.add_all(rows)
    db.session.commit()
    return rows


@pytest.fixture
def wishlist(owner, books):
    shared = ShareableList(user_id=owner.id, share_code="READER01", title="Avid Reader's wishlist")
    db.session.add(shared)
    db.session.commit()
    return shared


@pytest.fixture
def make_card(app):
    def _make(code, balance, status="active", expires_at=None, original=None):
        card = GiftCard(
            code=code,
            original_amount=Decimal(original or balance),
            current_balance=Decimal(balance),
            status=status,
            expires_at=expires_at,
        )
        db.session.add(card)
        db.session.commit()
        return card
    return _make


@pytest.fixture
def address():
    return {
        "firstName": "Ada",
        "lastName": "Lovelace",
        "address": "12 St James's Square",
        "city": "London",
        "state": "",
        "zipCode": "SW1Y 4JH",
        "country": "GB",
        "email": "ada@example.com",
    }
