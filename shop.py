# shop.py
from flask import Blueprint, current_app, jsonify, request, session
from sqlalchemy import nullslast
import json
import logging

from core import db, Book, ShareableList, User, money, utcnow
from errors import ConfigurationError, InvalidTransitionError, NotFoundError, ValidationError
from checkout import (
    create_order, complete_card_payment, confirm_gift_card_only,
    get_order, settle_from_intent,
)
from giftcards import check_gift_card
from payments import verify_webhook_signature
from pricing import breakdown

logger = logging.getLogger(__name__)

shop_bp = Blueprint("shop", __name__, url_prefix="/api")


# --- Helpers (storefront-specific) ---
def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object body")
    return data


def processor():
    return current_app.extensions["payment_processor"]


def get_cart():
    return session.setdefault("cart", {})  # book_id -> qty


def cart_items():
    cart = get_cart()
    items = []
    lines = []
    for book_id, qty in cart.items():
        book = db.session.get(Book, book_id)
        if not book or book.price is None:
            continue
        qty = int(qty)
        line_total = book.price * qty
        lines.append((book.price, qty))
        items.append({"book": book.to_dict(), "quantity": qty, "line_total": money(line_total)})
    return items, breakdown(lines)


def cart_response():
    items, amounts = cart_items()
    return jsonify({"items": items, **{k: money(v) for k, v in amounts.items()}})


def money_fields(data):
    return {k: data.get(k) for k in ("subtotal", "tax", "shipping", "total")}


# --- Routes: Wishlist ---
@shop_bp.route("/lists/<share_code>")
def wishlist(share_code):
    shared = ShareableList.query.filter_by(share_code=share_code.strip().upper(), is_public=True).first()
    if not shared:
        raise NotFoundError("List", share_code)
    owner = db.session.get(User, shared.user_id)
    if not owner:
        raise NotFoundError("User", shared.user_id)

    books = (
        Book.query.filter_by(user_id=owner.id, status="want")
        .order_by(nullslast(Book.priority.asc()), Book.date_added.desc())
        .all()
    )

    shared.view_count = (shared.view_count or 0) + 1
    shared.last_viewed_at = utcnow()
    db.session.commit()

    return jsonify({
        "list": shared.to_dict(),
        "books": [b.to_dict() for b in books],
        "user": owner.to_public_dict(),
    })


# --- Routes: Cart ---
@shop_bp.route("/cart")
def cart_view():
    return cart_response()


@shop_bp.route("/cart/items", methods=["POST"])
def add_to_cart():
    data = json_body()
    book = db.session.get(Book, data.get("bookId") or "")
    if not book:
        raise NotFoundError("Book", data.get("bookId"))
    if book.is_purchased_gift:
        raise ValidationError(f"'{book.title}' has already been purchased")
    try:
        qty = int(data["quantity"]) if data.get("quantity") is not None else 1
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a whole number")
    if qty < 1:
        raise ValidationError("Quantity must be at least 1")
    cart = get_cart()
    cart[book.id] = int(cart.get(book.id, 0)) + qty
    session["cart"] = cart
    return cart_response()


@shop_bp.route("/cart/items/<book_id>", methods=["DELETE"])
def remove_from_cart(book_id):
    cart = get_cart()
    if book_id in cart:
        del cart[book_id]
        session["cart"] = cart
    return cart_response()


@shop_bp.route("/cart", methods=["DELETE"])
def clear_cart():
    session["cart"] = {}
    return cart_response()


# --- Routes: Gift cards ---
@shop_bp.route("/gift-cards/check", methods=["POST"])
def gift_card_check():
    data = request.get_json(silent=True) or {}
    code = data.get("code")
    if not code:
        return jsonify({"isValid": False, "message": "Gift card code is required"}), 400
    return jsonify(check_gift_card(code).to_dict())


# --- Routes: Orders ---
@shop_bp.route("/orders", methods=["POST"])
def place_order():
    data = json_body()
    items = data.get("items")
    from_session = items is None
    if from_session:
        items = [{"bookId": book_id, "quantity": qty} for book_id, qty in get_cart().items()]

    order, client_secret = create_order(
        items,
        data.get("shippingAddress"),
        payment_info=data.get("paymentInfo"),
        gift_info=data.get("giftInfo"),
        claimed_totals=money_fields(data),
        processor=processor(),
    )
    if from_session:
        session["cart"] = {}
    session["last_order_id"] = order.id
    return jsonify({
        "success": True,
        "order": order.to_dict(),
        "orderId": order.id,
        "clientSecret": client_secret,
        "amountDue": money(order.amount_due),
    }), 201


@shop_bp.route("/orders/<order_id>")
def order_summary(order_id):
    order = get_order(order_id)
    return jsonify({"order": order.to_dict(), "items": [g.to_item_dict() for g in order.gifts]})


@shop_bp.route("/orders/complete", methods=["POST"])
def complete_order():
    data = json_body()
    result = complete_card_payment(data.get("orderId"), processor())
    return jsonify({"success": True, "alreadySettled": result.already_settled})


@shop_bp.route("/orders/confirm-gift-card-only", methods=["POST"])
def confirm_with_gift_card():
    data = json_body()
    result = confirm_gift_card_only(data.get("orderId"), data.get("giftCardCode"))
    return jsonify({"success": True, "alreadySettled": result.already_settled})


@shop_bp.route("/payments/webhook", methods=["POST"])
def payment_webhook():
    """Processor calls this on payment_intent.succeeded."""
    raw_body = request.get_data()
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise ConfigurationError("Payment webhooks are not configured. Set STRIPE_WEBHOOK_SECRET.")
    try:
        verify_webhook_signature(raw_body, request.headers.get("Stripe-Signature"), secret)
    except ValueError as exc:
        logger.warning("Rejected webhook: %s", exc)
        raise ValidationError("Invalid webhook signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Invalid webhook payload")
    event_type = payload.get("type")
    if event_type != "payment_intent.succeeded":
        return jsonify({"status": "ignored", "type": event_type})

    intent = (payload.get("data") or {}).get("object") or {}
    try:
        result = settle_from_intent(intent, processor())
    except InvalidTransitionError as exc:
        # charged on an order that was already cancelled or refunded
        logger.warning("Payment %s succeeded for closed order: %s", intent.get("id"), exc.message)
        return jsonify({"status": "order_closed", "orderId": (intent.get("metadata") or {}).get("order_id")})
    if result is None:
        return jsonify({"status": "missing_metadata"})
    return jsonify({"status": "already_settled" if result.already_settled else "ok", "orderId": result.order.id})
