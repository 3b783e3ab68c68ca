# orders.py
import logging

from core import db, ORDER_STATUSES, utcnow
from errors import ValidationError, InvalidTransitionError
from giftcards import restore_for_order

logger = logging.getLogger(__name__)

# pending -> confirmed happens only through settlement
ORDER_TRANSITIONS = {
    "pending": {"cancelled"},
    "confirmed": {"processing", "ordered", "cancelled", "refunded"},
    "processing": {"ordered", "cancelled", "refunded"},
    "ordered": {"shipped", "cancelled", "refunded"},
    "shipped": {"delivered"},
    "delivered": {"refunded"},
    "cancelled": set(),
    "refunded": set(),
}

STATUS_TIMESTAMPS = {
    "ordered": "ordered_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}


def can_transition(current, requested):
    return requested in ORDER_TRANSITIONS.get(current, set())


def release_books(order):
    """Put the order's books back on their wishlists."""
    for gift in order.gifts:
        book = gift.book
        if book is not None and book.gift_purchase_id == gift.id:
            book.is_purchased_gift = False
            book.gift_purchase_id = None


def advance_status(order, status, tracking_number=None, carrier=None, now=None):
    """Move `order` to `status` and commit.

    Raises ValidationError for unknown statuses or a missing tracking number
    on shipment, InvalidTransitionError for moves the table doesn't allow.
    Cancelling or refunding an order puts any gift-card money back.
    """
    status = (status or "").strip().lower()
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status: {status or '(empty)'}")
    if not can_transition(order.status, status):
        raise InvalidTransitionError(order.status, status)

    tracking_number = (tracking_number or "").strip() or None
    if status == "shipped" and not (tracking_number or order.tracking_number):
        raise ValidationError("Tracking number is required to mark an order shipped")

    now = now or utcnow()
    previous = order.status
    order.status = status
    order.updated_at = now
    if tracking_number:
        order.tracking_number = tracking_number
    if carrier:
        order.carrier = carrier.strip()
    stamp = STATUS_TIMESTAMPS.get(status)
    if stamp:
        setattr(order, stamp, now)

    if status in ("cancelled", "refunded"):
        restore_for_order(order, now=now)
        release_books(order)

    db.session.commit()
    logger.info("Order %s moved %s -> %s", order.id, previous, status)
    return order
