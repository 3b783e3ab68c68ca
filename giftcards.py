# giftcards.py
"""Gift card checks, issuance and balance bookkeeping.

Balance writes go through compare-and-set on `current_balance` so two
settlements racing on one card cannot both spend the same money. Every
deduction leaves a GiftCardRedemption row keyed by order id.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
import logging
import secrets
import string

from sqlalchemy import update

from core import db, GiftCard, GiftCardRedemption, utcnow, CURRENCY
from errors import NotFoundError, PaymentError, ValidationError
from pricing import to_money

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 12
MAX_CAS_ATTEMPTS = 5


@dataclass
class GiftCardCheck:
    is_valid: bool
    code: str
    balance: Decimal | None = None
    message: str | None = None

    def to_dict(self):
        if self.is_valid:
            return {"isValid": True, "balance": f"{self.balance:.2f}", "code": self.code}
        return {"isValid": False, "message": self.message}


def normalize_code(code):
    return (code or "").strip().upper()


def check_gift_card(code, now=None):
    """Report whether `code` can be spent right now. Read-only."""
    code = normalize_code(code)
    if not code:
        raise ValidationError("Gift card code is required")
    now = now or utcnow()

    card = GiftCard.query.filter_by(code=code, status="active").first()
    if card is None:
        return GiftCardCheck(False, code, message="Gift card not found or inactive")
    if to_money(card.current_balance) <= 0:
        return GiftCardCheck(False, code, message="Gift card balance is empty")
    if card.expires_at and card.expires_at < now:
        return GiftCardCheck(False, code, message="Gift card has expired")
    return GiftCardCheck(True, code, balance=to_money(card.current_balance))


def generate_code():
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def issue_gift_card(amount, code=None, recipient_email=None, message=None,
                    purchaser_id=None, expires_in_days=None, commit=True):
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Gift card amount must be positive")
    if code:
        code = normalize_code(code)
        if GiftCard.query.filter_by(code=code).first() is not None:
            raise ValidationError(f"Gift card code {code} already exists")
    else:
        code = generate_code()
        while GiftCard.query.filter_by(code=code).first() is not None:
            code = generate_code()
    expires_at = None
    if expires_in_days:
        try:
            expires_at = utcnow() + timedelta(days=int(expires_in_days))
        except (TypeError, ValueError):
            raise ValidationError("expiresInDays must be a whole number")
    card = GiftCard(
        code=code,
        original_amount=amount,
        current_balance=amount,
        currency=CURRENCY,
        purchaser_id=purchaser_id,
        recipient_email=recipient_email,
        message=message,
        status="active",
        expires_at=expires_at,
    )
    db.session.add(card)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    logger.info("Issued gift card %s for $%s", code, amount)
    return card


def redeem_for_order(order, now=None):
    """Deduct the order's gift-card discount once. Caller commits.

    Returns the GiftCardRedemption, or the existing one when this order was
    already charged to the card. Raises PaymentError when the card no longer
    holds the full discount, e.g. another order spent it first.
    """
    existing = GiftCardRedemption.query.filter_by(order_id=order.id).first()
    if existing is not None:
        return existing

    code = normalize_code(order.gift_card_code)
    discount = to_money(order.gift_card_discount)
    now = now or utcnow()

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        card = GiftCard.query.filter_by(code=code).populate_existing().first()
        if card is None:
            raise NotFoundError("Gift card", code)
        observed = to_money(card.current_balance)
        if observed < discount:
            logger.warning("Gift card %s holds $%s, order %s needs $%s", code, observed, order.id, discount)
            raise PaymentError(
                f"Gift card balance is now ${observed:.2f}, less than the ${discount:.2f} applied to this order"
            )
        new_balance = observed - discount
        new_status = "redeemed" if new_balance <= 0 else card.status
        values = {"current_balance": new_balance, "status": new_status}
        if new_status == "redeemed" and card.fully_redeemed_at is None:
            values["fully_redeemed_at"] = now

        result = db.session.execute(
            update(GiftCard)
            .where(GiftCard.id == card.id, GiftCard.current_balance == observed)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.session.expire(card)
            break
        logger.debug("Gift card %s balance changed under us (attempt %d)", code, attempt)
        db.session.expire(card)
    else:
        raise ValidationError(f"Gift card {code} is busy, please retry")

    redemption = GiftCardRedemption(
        gift_card_id=card.id,
        order_id=order.id,
        amount=discount,
        balance_after=new_balance,
        created_at=now,
    )
    db.session.add(redemption)
    logger.info("Gift card %s deducted $%s for order %s, new balance: $%s", code, discount, order.id, new_balance)
    return redemption


def restore_for_order(order, now=None):
    """Put an order's redeemed amount back on its card. Caller commits.

    Returns the restored amount, or None when nothing was redeemed or the
    redemption was already reversed.
    """
    redemption = GiftCardRedemption.query.filter_by(order_id=order.id).first()
    if redemption is None or redemption.reversed_at is not None:
        return None
    now = now or utcnow()
    amount = to_money(redemption.amount)

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        card = db.session.get(GiftCard, redemption.gift_card_id)
        observed = to_money(card.current_balance)
        new_balance = min(observed + amount, to_money(card.original_amount))
        values = {"current_balance": new_balance}
        if card.status == "redeemed" and new_balance > 0:
            values.update(status="active", fully_redeemed_at=None)
        result = db.session.execute(
            update(GiftCard)
            .where(GiftCard.id == card.id, GiftCard.current_balance == observed)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.session.expire(card)
        if result.rowcount == 1:
            break
    else:
        raise ValidationError(f"Gift card {card.code} is busy, please retry")

    redemption.reversed_at = now
    logger.info("Gift card %s restored $%s from order %s", card.code, amount, order.id)
    return amount
