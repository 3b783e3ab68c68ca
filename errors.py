# errors.py
"""Exceptions raised by the storefront and rendered as JSON errors."""


class StoreError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500

    def __init__(self, message):
        self.message = message
        super().__init__(message)


class ValidationError(StoreError):
    """Raised when request input is missing or inconsistent."""

    status_code = 400


class AuthError(StoreError):
    status_code = 401

    def __init__(self, message="Unauthorized"):
        super().__init__(message)


class PaymentError(StoreError):
    """Raised when a payment has not been collected for an order."""

    status_code = 402


class NotFoundError(StoreError):
    status_code = 404

    def __init__(self, kind, key=None):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found")


class InvalidTransitionError(StoreError):
    """Raised when an order cannot move to the requested status."""

    status_code = 409

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move order from '{current}' to '{requested}'")


class ProcessorError(StoreError):
    """Raised when the card-payment processor rejects or fails a call."""

    status_code = 502


class ConfigurationError(StoreError):
    status_code = 503
