# checkout.py
"""Order creation and payment settlement.

An order is written as `pending` together with one gift row per cart line.
Settlement claims it with a conditional `pending -> confirmed` update, so
calling it again for the same order changes nothing and never touches the
gift card twice.
"""
from dataclasses import dataclass
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from core import db, Book, Gift, GiftCardRedemption, Order, CURRENCY, PLATFORM, utcnow
from errors import (
    ConfigurationError, InvalidTransitionError, NotFoundError, PaymentError, ValidationError,
)
from giftcards import check_gift_card, normalize_code, redeem_for_order
from payments import to_cents
from pricing import breakdown, check_client_totals, gift_card_discount, to_money

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ("firstName", "lastName", "address", "city", "zipCode", "country")
CLOSED_STATUSES = ("cancelled", "refunded")


@dataclass
class SettlementResult:
    order: Order
    already_settled: bool
    redemption: GiftCardRedemption | None = None


def _book_id(item):
    if item.get("bookId"):
        return item["bookId"]
    return (item.get("book") or {}).get("id")


def resolve_items(items):
    """Turn raw cart lines into (book, qty, item) triples priced from the DB."""
    if not items:
        raise ValidationError("Cart is empty")
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    lines = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("Each cart item must be an object")
        book_id = _book_id(item)
        if not book_id:
            raise ValidationError("Each cart item needs a book id")
        try:
            qty = int(item["quantity"]) if item.get("quantity") is not None else 1
        except (TypeError, ValueError):
            raise ValidationError("Quantity must be a whole number")
        if qty < 1:
            raise ValidationError("Quantity must be at least 1")
        book = db.session.get(Book, book_id)
        if book is None:
            raise NotFoundError("Book", book_id)
        if book.is_purchased_gift:
            raise ValidationError(f"'{book.title}' has already been purchased")
        if book.price is None:
            raise ValidationError(f"'{book.title}' is not available for purchase")
        lines.append((book, qty, item))
    return lines


def validate_address(address):
    if not isinstance(address, dict):
        raise ValidationError("Shipping address is required")
    missing = [f for f in REQUIRED_ADDRESS_FIELDS if not str(address.get(f) or "").strip()]
    if missing:
        raise ValidationError(f"Missing shipping fields: {', '.join(missing)}")


def create_order(items, shipping_address, payment_info=None, gift_info=None,
                 claimed_totals=None, processor=None):
    """Write one order plus its gift rows in a single transaction.

    Returns (order, client_secret); client_secret is None when the gift
    card covers everything.
    """
    payment_info = payment_info or {}
    gift_info = gift_info or {}
    if not isinstance(payment_info, dict):
        raise ValidationError("paymentInfo must be an object")
    if not isinstance(gift_info, dict):
        raise ValidationError("giftInfo must be an object")

    lines = resolve_items(items)
    validate_address(shipping_address)
    amounts = breakdown((book.price, qty) for book, qty, _ in lines)
    check_client_totals(amounts, claimed_totals or {})

    code = normalize_code(gift_info.get("giftCardCode"))
    discount = to_money(0)
    if code:
        check = check_gift_card(code)
        if not check.is_valid:
            raise ValidationError(check.message)
        discount = gift_card_discount(amounts["total"], check.balance)
    amount_due = amounts["total"] - discount

    if amount_due > 0 and (processor is None or not processor.configured):
        raise ConfigurationError("Card payments are not configured")

    customer_id = payment_info.get("customer_id")
    order = Order(
        user_id=customer_id,
        subtotal=amounts["subtotal"],
        tax=amounts["tax"],
        shipping=amounts["shipping"],
        total=amounts["total"],
        gift_card_code=code or None,
        gift_card_discount=discount,
        amount_due=amount_due,
        status="pending",
        platform=PLATFORM,
        item_count=sum(qty for _, qty, _ in lines),
        shipping_address=shipping_address,
        customer_email=payment_info.get("email") or shipping_address.get("email"),
        is_gift=bool(gift_info.get("isGift")),
        gift_message=gift_info.get("message") or None,
        recipient_email=gift_info.get("recipientEmail") or None,
    )
    client_secret = None
    try:
        db.session.add(order)
        db.session.flush()
        for book, qty, item in lines:
            db.session.add(Gift(
                order_id=order.id,
                book_id=book.id,
                from_user_id=customer_id,
                to_user_id=gift_info.get("recipientUserId") or book.user_id,
                recipient_email=item.get("recipientEmail") or order.recipient_email,
                message=item.get("giftMessage") or order.gift_message,
                quantity=qty,
                price=book.price,
                status="purchased",
            ))
        if amount_due > 0:
            intent = processor.create_payment_intent(amount_due, CURRENCY, metadata={"order_id": order.id})
            order.payment_id = intent["id"]
            client_secret = intent.get("client_secret")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Created order %s: total $%s, gift card $%s, due by card $%s",
                order.id, order.total, discount, amount_due)
    return order, client_secret


def get_order(order_id):
    order = db.session.get(Order, order_id) if order_id else None
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def settle_order(order_id, payment_id=None, amount_paid=None, now=None):
    """Finalize payment bookkeeping for an order. Never charges anything."""
    now = now or utcnow()
    values = {"status": "confirmed", "confirmed_at": now, "updated_at": now}
    if payment_id:
        values["payment_id"] = payment_id
    if amount_paid is not None:
        values["amount_paid"] = to_money(amount_paid)

    claimed = db.session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount == 1
    if not claimed:
        db.session.rollback()
        order = get_order(order_id)
        if order.status in CLOSED_STATUSES:
            raise InvalidTransitionError(order.status, "confirmed")
        logger.info("Order %s already settled (status %s)", order_id, order.status)
        existing = GiftCardRedemption.query.filter_by(order_id=order_id).first()
        return SettlementResult(order, True, existing)

    order = db.session.get(Order, order_id, populate_existing=True)
    try:
        redemption = None
        if order.gift_card_code and to_money(order.gift_card_discount) > 0:
            redemption = redeem_for_order(order, now=now)
        for gift in order.gifts:
            if gift.book is not None:
                gift.book.is_purchased_gift = True
                gift.book.gift_purchase_id = gift.id
        db.session.commit()
    except IntegrityError:
        # a concurrent settlement already wrote the redemption row
        db.session.rollback()
        return SettlementResult(get_order(order_id), True,
                                GiftCardRedemption.query.filter_by(order_id=order_id).first())
    except Exception:
        db.session.rollback()
        raise

    logger.info("Order %s settled", order_id)
    return SettlementResult(order, False, redemption)


def complete_card_payment(order_id, processor):
    """Settle an order once the processor shows the card charge succeeded."""
    order = get_order(order_id)
    if order.status != "pending":
        return settle_order(order_id)
    amount_paid = to_money(0)
    if to_money(order.amount_due) > 0:
        if not order.payment_id:
            raise PaymentError("Order has no card payment to confirm")
        intent = processor.retrieve_payment_intent(order.payment_id)
        if intent.get("status") != "succeeded":
            raise PaymentError(f"Card payment not completed (status {intent.get('status')})")
        if int(intent.get("amount_received") or 0) < to_cents(order.amount_due):
            raise PaymentError("Card payment is less than the amount due")
        amount_paid = order.amount_due
    return settle_order(order_id, amount_paid=amount_paid)


def confirm_gift_card_only(order_id, gift_card_code):
    """Settle an order that the gift card pays for in full."""
    code = normalize_code(gift_card_code)
    if not code:
        raise ValidationError("Gift card code is required")
    order = get_order(order_id)
    if normalize_code(order.gift_card_code) != code:
        raise ValidationError("Gift card does not match this order")
    if to_money(order.amount_due) > 0:
        raise PaymentError(f"Order still has ${order.amount_due:.2f} due by card")
    return settle_order(order_id, payment_id=f"gift_card_{code}", amount_paid=0)


def settle_from_intent(intent, processor):
    """Settle the order named in a payment_intent.succeeded event.

    The event body is only used to find the order. The charge itself is read
    back from the processor before anything is settled.
    """
    order_id = (intent.get("metadata") or {}).get("order_id")
    if not order_id:
        return None
    order = get_order(order_id)
    if not intent.get("id") or intent["id"] != order.payment_id:
        raise ValidationError("Payment does not belong to this order")
    return complete_card_payment(order_id, processor)
