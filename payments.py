# payments.py
"""Stripe PaymentIntents over plain HTTP.

Only the calls the checkout needs: create an intent for the amount due by
card, read it back to confirm it succeeded, and verify webhook signatures.
"""
from decimal import Decimal
import hashlib
import hmac
import logging
import time

import httpx

from errors import ConfigurationError, ProcessorError

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE = 300  # seconds


def to_cents(amount):
    return int((Decimal(str(amount)) * 100).to_integral_value())


class StripeClient:
    def __init__(self, secret_key, api_base="https://api.stripe.com/v1", transport=None, timeout=10.0):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    @property
    def configured(self):
        return bool(self.secret_key)

    def _request(self, method, path, data=None):
        if not self.configured:
            raise ConfigurationError("Card payments are not configured. Set STRIPE_SECRET_KEY.")
        with httpx.Client(transport=self.transport, timeout=self.timeout) as client:
            try:
                resp = client.request(
                    method,
                    f"{self.api_base}{path}",
                    headers={"Authorization": f"Bearer {self.secret_key}"},
                    data=data,
                )
            except httpx.HTTPError as exc:
                logger.error("Payment processor unreachable: %s", exc)
                raise ProcessorError("Payment processor unavailable") from exc
        if resp.status_code != 200:
            logger.error("Payment processor %s %s failed: %s %s", method, path, resp.status_code, resp.text)
            raise ProcessorError("Payment processor rejected the request")
        return resp.json()

    def create_payment_intent(self, amount, currency, metadata=None):
        data = {
            "amount": to_cents(amount),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = value
        intent = self._request("POST", "/payment_intents", data=data)
        logger.info("Created payment intent %s for %s %s", intent["id"], amount, currency)
        return intent

    def retrieve_payment_intent(self, intent_id):
        return self._request("GET", f"/payment_intents/{intent_id}")


def verify_webhook_signature(payload, sig_header, secret, tolerance=WEBHOOK_TOLERANCE, now=None):
    """Check a Stripe-Signature header; raises ValueError on mismatch.

    Signatures older than `tolerance` seconds are rejected so a captured
    event can't be replayed later.
    https://stripe.com/docs/webhooks/signatures
    """
    parts = [kv.split("=", 1) for kv in (sig_header or "").split(",") if "=" in kv]
    timestamp = next((v for k, v in parts if k == "t"), "")
    signatures = [v for k, v in parts if k == "v1"]
    try:
        signed_at = int(timestamp)
    except ValueError:
        raise ValueError("Signature header has no timestamp")

    signed_payload = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()

    if not any(hmac.compare_digest(expected, s) for s in signatures):
        raise ValueError("Signature mismatch")
    now = time.time() if now is None else now
    if signed_at < now - tolerance:
        raise ValueError("Signature timestamp outside the tolerance window")
