# admin.py
from flask import Blueprint, current_app, jsonify, request, session
from sqlalchemy import func
from functools import wraps
import hmac
import logging

from core import db, GiftCard, GiftCardRedemption, Order, GIFT_CARD_STATUSES, ORDER_STATUSES, money
from errors import AuthError, ValidationError
from checkout import get_order
from giftcards import issue_gift_card
from orders import advance_status

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)

SETTLED_STATUSES = ("confirmed", "processing", "ordered", "shipped", "delivered")


def password_matches(candidate):
    expected = current_app.config["ADMIN_PASSWORD"]
    return bool(candidate) and hmac.compare_digest(str(candidate).encode(), expected.encode())


def require_admin(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not (session.get("is_admin") or password_matches(request.headers.get("X-Admin-Password"))):
            raise AuthError()
        return view(*args, **kwargs)
    return wrapper


def page_args():
    try:
        limit = int(request.args.get("limit", 50))
        offset = int(request.args.get("offset", 0))
    except ValueError:
        raise ValidationError("limit and offset must be integers")
    return max(1, min(limit, 200)), max(0, offset)


def order_row(order):
    return {
        "id": order.id,
        "customer_name": order.customer_name,
        "total_amount": money(order.total),
        "amount_paid": money(order.amount_paid) if order.amount_paid is not None else None,
        "status": order.status,
        "created_at": order.created_at.isoformat(),
        "items_count": order.item_count or 0,
    }


def collect_stats():
    counts = dict(db.session.query(Order.status, func.count(Order.id)).group_by(Order.status).all())
    revenue = db.session.query(func.coalesce(func.sum(Order.total), 0)).filter(
        Order.status.in_(SETTLED_STATUSES)
    ).scalar()
    redeemed = (
        db.session.query(func.count(func.distinct(GiftCardRedemption.gift_card_id)))
        .filter(GiftCardRedemption.reversed_at.is_(None))
        .scalar()
    )
    return {
        "totalOrders": sum(counts.values()),
        "totalRevenue": money(revenue),
        "pendingOrders": counts.get("pending", 0),
        "confirmedOrders": counts.get("confirmed", 0),
        "completedOrders": counts.get("delivered", 0),
        "ordersByStatus": {s: counts.get(s, 0) for s in ORDER_STATUSES},
        "giftCardsIssued": GiftCard.query.count(),
        "giftCardsRedeemed": redeemed or 0,
    }


@admin_bp.route("/login", methods=["POST"])
def admin_login():
    data = request.get_json(silent=True) or {}
    if password_matches(data.get("password", "")):
        session["is_admin"] = True
        logger.info("Admin logged in")
        return jsonify({"success": True})
    raise AuthError("Incorrect password")


@admin_bp.route("/logout", methods=["POST"])
def admin_logout():
    session.pop("is_admin", None)
    return jsonify({"success": True})


@admin_bp.route("/orders")
@require_admin
def list_orders():
    limit, offset = page_args()
    query = Order.query
    status = request.args.get("status")
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown order status: {status}")
        query = query.filter_by(status=status)
    total = query.count()
    orders = query.order_by(Order.created_at.desc()).offset(offset).limit(limit).all()
    return jsonify({"orders": [order_row(o) for o in orders], "total": total})


@admin_bp.route("/orders/<order_id>")
@require_admin
def order_detail(order_id):
    order = get_order(order_id)
    details = order.to_dict()
    details["customer_name"] = order.customer_name
    details["items"] = [g.to_item_dict() for g in order.gifts]
    return jsonify({"order": details})


@admin_bp.route("/orders/<order_id>/status", methods=["PATCH"])
@require_admin
def update_order_status(order_id):
    order = get_order(order_id)
    data = request.get_json(silent=True) or {}
    advance_status(order, data.get("status"), data.get("tracking_number"), data.get("carrier"))
    return jsonify({"success": True, "order": order.to_dict()})


@admin_bp.route("/stats")
@require_admin
def stats():
    return jsonify(collect_stats())


@admin_bp.route("/dashboard")
@require_admin
def dashboard():
    recent = Order.query.order_by(Order.created_at.desc()).limit(10).all()
    return jsonify({**collect_stats(), "recentOrders": [order_row(o) for o in recent]})


@admin_bp.route("/gift-cards")
@require_admin
def list_gift_cards():
    limit, offset = page_args()
    query = GiftCard.query
    status = request.args.get("status")
    if status:
        if status not in GIFT_CARD_STATUSES:
            raise ValidationError(f"Unknown gift card status: {status}")
        query = query.filter_by(status=status)
    total = query.count()
    cards = query.order_by(GiftCard.created_at.desc()).offset(offset).limit(limit).all()
    return jsonify({"giftCards": [c.to_dict() for c in cards], "total": total})


@admin_bp.route("/gift-cards", methods=["POST"])
@require_admin
def create_gift_card():
    data = request.get_json(silent=True) or {}
    if data.get("amount") is None:
        raise ValidationError("Gift card amount is required")
    card = issue_gift_card(
        data["amount"],
        code=data.get("code"),
        recipient_email=data.get("recipientEmail"),
        message=data.get("message"),
        expires_in_days=data.get("expiresInDays"),
    )
    return jsonify({"success": True, "giftCard": card.to_dict()}), 201
