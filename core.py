# core.py
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException
from datetime import datetime, timezone
from decimal import Decimal
import logging
import uuid
import os

from errors import StoreError

logger = logging.getLogger(__name__)

# --- DB handle (imported by blueprints) ---
db = SQLAlchemy()

# --- Constants / Config shared across blueprints ---
TAX_RATE = Decimal("0.095")            # 9.5% on the book subtotal
SHIPPING_FLAT = Decimal("5.99")
FREE_SHIPPING_OVER = Decimal("35.00")  # strictly greater than
CURRENCY = "usd"
PLATFORM = "web"

ORDER_STATUSES = ["pending", "confirmed", "processing", "ordered", "shipped", "delivered", "cancelled", "refunded"]
GIFT_CARD_STATUSES = ["active", "redeemed", "expired", "cancelled"]
BOOK_STATUSES = ["want", "own", "read", "reading", "abandoned"]


def utcnow():
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


def money(value):
    return f"{Decimal(value):.2f}"


def isoformat(value):
    return value.isoformat() if value else None


# --- Models ---
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(200), unique=True, nullable=False)
    username = db.Column(db.String(80), unique=True, nullable=False)
    display_name = db.Column(db.String(120), nullable=False)
    avatar_url = db.Column(db.String(300), nullable=True)
    is_public = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_public_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
        }


class Book(db.Model):
    __tablename__ = "books"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    author = db.Column(db.String(200), nullable=False)
    isbn = db.Column(db.String(20), nullable=True)
    isbn13 = db.Column(db.String(20), nullable=True)
    cover_url = db.Column(db.String(300), nullable=True)
    thumbnail_url = db.Column(db.String(300), nullable=True)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="want")  # one of BOOK_STATUSES
    priority = db.Column(db.Integer, nullable=True)
    date_added = db.Column(db.DateTime, nullable=False, default=utcnow)
    list_price = db.Column(db.Numeric(10, 2), nullable=True)
    retail_price = db.Column(db.Numeric(10, 2), nullable=True)
    currency_code = db.Column(db.String(3), nullable=True)
    is_purchased_gift = db.Column(db.Boolean, nullable=False, default=False)
    gift_purchase_id = db.Column(db.String(36), nullable=True)

    @property
    def price(self):
        """Sale price: retail if known, else list."""
        value = self.retail_price if self.retail_price is not None else self.list_price
        return Decimal(str(value)) if value is not None else None

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "isbn13": self.isbn13,
            "cover_url": self.cover_url,
            "thumbnail_url": self.thumbnail_url,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "date_added": isoformat(self.date_added),
            "list_price": money(self.list_price) if self.list_price is not None else None,
            "retail_price": money(self.retail_price) if self.retail_price is not None else None,
            "currency_code": self.currency_code,
            "is_purchased_gift": self.is_purchased_gift,
            "gift_purchase_id": self.gift_purchase_id,
        }


class ShareableList(db.Model):
    __tablename__ = "shareable_lists"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    share_code = db.Column(db.String(40), unique=True, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_public = db.Column(db.Boolean, nullable=False, default=True)
    view_count = db.Column(db.Integer, nullable=False, default=0)
    last_viewed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "share_code": self.share_code,
            "title": self.title,
            "description": self.description,
            "is_public": self.is_public,
            "view_count": self.view_count,
            "last_viewed_at": isoformat(self.last_viewed_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class GiftCard(db.Model):
    __tablename__ = "gift_cards"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    code = db.Column(db.String(40), unique=True, nullable=False)
    original_amount = db.Column(db.Numeric(10, 2), nullable=False)
    current_balance = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default=CURRENCY)
    purchaser_id = db.Column(db.String(36), nullable=True)
    recipient_email = db.Column(db.String(200), nullable=True)
    recipient_id = db.Column(db.String(36), nullable=True)
    message = db.Column(db.Text, nullable=True)
    stripe_payment_intent_id = db.Column(db.String(120), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="active")  # one of GIFT_CARD_STATUSES
    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    claimed_at = db.Column(db.DateTime, nullable=True)
    fully_redeemed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "original_amount": money(self.original_amount),
            "current_balance": money(self.current_balance),
            "currency": self.currency,
            "purchaser_id": self.purchaser_id,
            "recipient_email": self.recipient_email,
            "message": self.message,
            "status": self.status,
            "expires_at": isoformat(self.expires_at),
            "created_at": isoformat(self.created_at),
            "fully_redeemed_at": isoformat(self.fully_redeemed_at),
        }


class GiftCardRedemption(db.Model):
    """One balance deduction per order; order_id is unique."""
    __tablename__ = "gift_card_redemptions"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    gift_card_id = db.Column(db.String(36), db.ForeignKey("gift_cards.id"), nullable=False, index=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), unique=True, nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    balance_after = db.Column(db.Numeric(10, 2), nullable=False)
    reversed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    gift_card = db.relationship("GiftCard")


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), nullable=True)
    subtotal = db.Column(db.Numeric(10, 2), nullable=False)
    tax = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    shipping = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(10, 2), nullable=False)  # subtotal + tax + shipping, before gift card
    gift_card_code = db.Column(db.String(40), nullable=True)
    gift_card_discount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    amount_due = db.Column(db.Numeric(10, 2), nullable=False)  # total - gift_card_discount, due by card
    amount_paid = db.Column(db.Numeric(10, 2), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")  # one of ORDER_STATUSES
    payment_id = db.Column(db.String(120), nullable=True, index=True)
    platform = db.Column(db.String(20), nullable=False, default=PLATFORM)
    item_count = db.Column(db.Integer, nullable=False, default=0)
    shipping_address = db.Column(db.JSON, nullable=True)
    customer_email = db.Column(db.String(200), nullable=True)
    is_gift = db.Column(db.Boolean, nullable=False, default=False)
    gift_message = db.Column(db.Text, nullable=True)
    recipient_email = db.Column(db.String(200), nullable=True)
    tracking_number = db.Column(db.String(120), nullable=True)
    carrier = db.Column(db.String(60), nullable=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    ordered_at = db.Column(db.DateTime, nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    gifts = db.relationship("Gift", back_populates="order", order_by="Gift.created_at")

    @property
    def customer_name(self):
        address = self.shipping_address or {}
        name = f"{address.get('firstName', '')} {address.get('lastName', '')}".strip()
        return name or "Unknown Customer"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "subtotal": money(self.subtotal),
            "tax": money(self.tax),
            "shipping": money(self.shipping),
            "total": money(self.total),
            "gift_card_code": self.gift_card_code,
            "gift_card_discount": money(self.gift_card_discount),
            "amount_due": money(self.amount_due),
            "amount_paid": money(self.amount_paid) if self.amount_paid is not None else None,
            "status": self.status,
            "payment_id": self.payment_id,
            "platform": self.platform,
            "item_count": self.item_count,
            "shipping_address": self.shipping_address,
            "customer_email": self.customer_email,
            "is_gift": self.is_gift,
            "gift_message": self.gift_message,
            "recipient_email": self.recipient_email,
            "tracking_number": self.tracking_number,
            "carrier": self.carrier,
            "confirmed_at": isoformat(self.confirmed_at),
            "ordered_at": isoformat(self.ordered_at),
            "shipped_at": isoformat(self.shipped_at),
            "delivered_at": isoformat(self.delivered_at),
            "cancelled_at": isoformat(self.cancelled_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class Gift(db.Model):
    __tablename__ = "gifts"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    book_id = db.Column(db.String(36), db.ForeignKey("books.id"), nullable=False)
    from_user_id = db.Column(db.String(36), nullable=True)
    to_user_id = db.Column(db.String(36), nullable=True)
    recipient_email = db.Column(db.String(200), nullable=True)
    message = db.Column(db.Text, nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="purchased")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="gifts")
    book = db.relationship("Book")

    def to_item_dict(self):
        book = self.book
        return {
            "id": self.id,
            "book_id": self.book_id,
            "book_title": book.title if book else "Unknown Title",
            "book_author": book.author if book else "Unknown Author",
            "book_isbn": (book.isbn13 or book.isbn) if book else None,
            "book_cover_url": (book.cover_url or book.thumbnail_url) if book else None,
            "quantity": self.quantity,
            "price": money(self.price),
            "gift_message": self.message,
        }


def seed_if_empty():
    """Seed a demo wishlist and two gift cards on first run."""
    if User.query.count() > 0:
        return
    from giftcards import issue_gift_card

    owner = User(email="reader@example.com", username="reader", display_name="Avid Reader")
    db.session.add(owner)
    db.session.flush()
    books = [
        {"title": "The Phantom Tollbooth", "author": "Norton Juster", "isbn13": "9780394820378", "priority": 1, "retail_price": Decimal("8.99")},
        {"title": "Sapiens", "author": "Yuval Noah Harari", "isbn13": "9780062316097", "priority": 2, "retail_price": Decimal("11.01")},
        {"title": "Where the Wild Things Are", "author": "Maurice Sendak", "isbn13": "9780060254926", "list_price": Decimal("7.99")},
    ]
    for b in books:
        db.session.add(Book(user_id=owner.id, **b))
    db.session.add(ShareableList(user_id=owner.id, share_code="READER01", title="Avid Reader's wishlist"))
    issue_gift_card(Decimal("25.00"), code="SAVE10", commit=False)
    issue_gift_card(Decimal("50.00"), code="FULL50", commit=False)
    db.session.commit()


def register_error_handlers(app):
    @app.errorhandler(StoreError)
    def handle_store_error(exc):
        return jsonify({"error": exc.message}), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({"error": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        logger.exception("Unhandled error: %s", exc)
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500


def create_app(test_config=None):
    load_dotenv()
    app = Flask(__name__)

    # --- Config ---
    BASE_DIR = os.path.abspath(os.path.dirname(__file__))
    DB_PATH = os.path.join(BASE_DIR, "bookwish.db")
    app.config.update(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev-secret-change-me"),
        SQLALCHEMY_DATABASE_URI=os.environ.get("DATABASE_URL", f"sqlite:///{DB_PATH}"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        ADMIN_PASSWORD=os.environ.get("ADMIN_PASSWORD", "admin123"),
        STRIPE_SECRET_KEY=os.environ.get("STRIPE_SECRET_KEY", ""),
        STRIPE_WEBHOOK_SECRET=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
        STRIPE_API_BASE=os.environ.get("STRIPE_API_BASE", "https://api.stripe.com/v1"),
        LOG_LEVEL=os.environ.get("LOG_LEVEL", "INFO"),
        SEED_DEMO_DATA=os.environ.get("SEED_DEMO_DATA", "1") == "1",
    )
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    db.init_app(app)

    # Payment processor client; tests swap in their own
    from payments import StripeClient
    app.extensions["payment_processor"] = app.config.get("PAYMENT_PROCESSOR") or StripeClient(
        app.config["STRIPE_SECRET_KEY"], api_base=app.config["STRIPE_API_BASE"]
    )

    # Register blueprints (import inside to avoid circular imports)
    from shop import shop_bp
    from admin import admin_bp
    app.register_blueprint(shop_bp)          # storefront API at /api
    app.register_blueprint(admin_bp, url_prefix="/admin")
    register_error_handlers(app)

    # Ensure tables exist at startup
    with app.app_context():
        db.create_all()
        if app.config["SEED_DEMO_DATA"]:
            seed_if_empty()

    logger.info("Bookwish store ready (db=%s)", app.config["SQLALCHEMY_DATABASE_URI"])
    return app


# Local dev entrypoint
if __name__ == "__main__":
    app = create_app()
    app.run(debug=True)
