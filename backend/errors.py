"""
Error kinds surfaced by the API.

Service functions raise these; main.py turns them into
{"detail": ..., "code": ...} responses with the matching status code.
"""
from typing import Optional


class MarketError(Exception):
    code = "ERROR"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, **extra):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)


class ValidationFailed(MarketError):
    code = "VALIDATION"
    status_code = 400
    default_message = "Invalid request"


class AuthenticationFailed(MarketError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class AccountDisabled(MarketError):
    code = "ACCOUNT_DISABLED"
    status_code = 403
    default_message = "Your account has been deactivated. Please contact support."


class AccessDenied(MarketError):
    code = "ACCESS_DENIED"
    status_code = 403
    default_message = "Access denied"


class NotFound(MarketError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class EmptyCart(MarketError):
    code = "EMPTY_CART"
    status_code = 400
    default_message = "Cart is empty"


class OutOfStock(MarketError):
    code = "OUT_OF_STOCK"
    status_code = 400
    default_message = "Not enough stock"


class AlreadyPaid(MarketError):
    code = "ALREADY_PAID"
    status_code = 409
    default_message = "Order is already paid"


class FulfillmentFailed(MarketError):
    code = "FULFILLMENT_FAILED"
    status_code = 409
    default_message = "Payment received but the order cannot be fulfilled"


class ReconciliationInProgress(MarketError):
    code = "RECONCILIATION_IN_PROGRESS"
    status_code = 409
    default_message = "Payment confirmation is already being processed, try again shortly"


class ProviderError(MarketError):
    code = "PROVIDER_ERROR"
    status_code = 502
    default_message = "Payment provider request failed"


class SyncPartialFailure(MarketError):
    code = "SYNC_PARTIAL_FAILURE"
    status_code = 503
    default_message = "Update was only partially applied"


class DatabaseUnavailable(MarketError):
    code = "DATABASE_UNAVAILABLE"
    status_code = 500
    default_message = "Database not configured"
