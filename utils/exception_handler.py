"""
Exception Handler Module
Typed fulfillment errors and the decorator that keeps notifier failures out of fulfillment
"""

import logging
import functools
from decimal import Decimal
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class FulfillmentError(Exception):
    """Base class for errors surfaced to callers of the fulfillment engine"""

    code = "fulfillment_error"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class ValidationError(FulfillmentError):
    """Custom validation error for input validation failures"""

    code = "validation_error"


class InsufficientFundsError(FulfillmentError):
    code = "insufficient_funds"

    def __init__(self, user_id: int, requested: Decimal, available: Optional[Decimal] = None):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        if available is None:
            message = f"Insufficient balance for {requested}"
        else:
            message = f"Insufficient balance: requested {requested}, available {available}"
        super().__init__(message)


class OutOfStockError(FulfillmentError):
    code = "out_of_stock"

    def __init__(self, product_name: str, requested: int = 1, available: int = 0):
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough stock for {product_name}: requested {requested}, available {available}"
        )


class PurchaseLimitError(FulfillmentError):
    code = "purchase_limit_exceeded"

    def __init__(self, product_name: str, limit: int):
        self.product_name = product_name
        self.limit = limit
        super().__init__(f"Purchase limit reached for {product_name} (max {limit} per user)")


class PriceMismatchError(FulfillmentError):
    code = "price_mismatch"

    def __init__(self, submitted: Decimal, calculated: Decimal):
        self.submitted = submitted
        self.calculated = calculated
        super().__init__(f"Price mismatch: submitted {submitted}, expected {calculated}")


class ProductNotFoundError(FulfillmentError):
    code = "product_not_found"


class UserNotFoundError(FulfillmentError):
    code = "user_not_found"


class InventoryItemSoldError(FulfillmentError):
    """Sold inventory rows are kept for audit and cannot be deleted"""

    code = "inventory_item_sold"


class ProviderUnavailableError(FulfillmentError):
    """Remote provider call failed, timed out or answered with an error"""

    code = "provider_unavailable"

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.detail = message
        super().__init__(f"{provider}: {message}")


class Px6APIError(ProviderUnavailableError):
    """Custom exception for px6 proxy API errors"""

    def __init__(self, message: str):
        super().__init__("px6", message)


class TigerSmsAPIError(ProviderUnavailableError):
    """Custom exception for Tiger SMS API errors"""

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.error_code = error_code
        super().__init__("tiger_sms", message)


class ProfiLikeAPIError(ProviderUnavailableError):
    """Custom exception for profi-like API errors"""

    def __init__(self, message: str):
        super().__init__("profi_like", message)


class UnauthorizedError(FulfillmentError):
    code = "unauthorized"


class ForbiddenError(UnauthorizedError):
    code = "forbidden"


class OrderNotFoundError(FulfillmentError):
    code = "order_not_found"


class OrderNotPaidError(FulfillmentError):
    code = "order_not_paid"


class LeaseNotFoundError(FulfillmentError):
    code = "lease_not_found"


class LeaseStateError(FulfillmentError):
    """Raised when a lease transition is not allowed from its current state"""

    code = "invalid_lease_state"


class PromoCodeError(FulfillmentError):
    code = "invalid_promo_code"


def notifier_safe(func: Callable) -> Callable:
    """
    Decorator for delivery-notifier coroutines.
    Notification failures are logged and reported as False, never raised into fulfillment.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.error(f"❌ NOTIFY_FAILED: {func.__name__}: {type(e).__name__}: {e}")
            return False

    return wrapper
