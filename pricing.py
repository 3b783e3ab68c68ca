# pricing.py
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from core import TAX_RATE, SHIPPING_FLAT, FREE_SHIPPING_OVER
from errors import ValidationError

CENT = Decimal("0.01")
TOLERANCE = Decimal("0.01")


def to_money(value):
    """Coerce a client or DB value to a cent-quantized Decimal."""
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid amount: {value!r}")


def shipping_cost(subtotal):
    if subtotal <= 0 or subtotal > FREE_SHIPPING_OVER:
        return Decimal("0.00")
    return SHIPPING_FLAT


def breakdown(lines):
    """Price (unit_price, qty) pairs into subtotal, shipping, tax and total."""
    subtotal = Decimal("0.00")
    for price, qty in lines:
        subtotal += to_money(price) * int(qty)
    subtotal = subtotal.quantize(CENT)
    ship = shipping_cost(subtotal)
    tax = (subtotal * TAX_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    total = (subtotal + ship + tax).quantize(CENT)
    return {"subtotal": subtotal, "shipping": ship, "tax": tax, "total": total}


def check_client_totals(computed, claimed):
    """Reject client-supplied amounts that disagree with the server's prices.

    `claimed` may omit any of the keys; only the ones present are compared.
    """
    for key in ("subtotal", "shipping", "tax", "total"):
        if claimed.get(key) is None:
            continue
        if abs(to_money(claimed[key]) - computed[key]) > TOLERANCE:
            raise ValidationError(f"Order {key} does not match cart prices")


def gift_card_discount(total, balance):
    """Discount a card can cover: its balance, capped at the order total."""
    return min(to_money(balance), to_money(total))
