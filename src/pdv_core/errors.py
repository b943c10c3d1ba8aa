"""Domain errors raised by the store, the cart and the sale engines."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class EmptyCartError(BusinessRuleViolation):
    """Raised when a sale is committed or rewritten without any line."""


class OutOfStockError(BusinessRuleViolation):
    """Raised when a cart line would request more units than are in stock."""

    def __init__(self, product_id: str, available: int, requested: int) -> None:
        super().__init__(
            f"Product '{product_id}' has {available} unit(s) in stock, "
            f"{requested} requested"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class AlreadyCancelledError(BusinessRuleViolation):
    """Raised when a cancelled sale is cancelled or edited again."""


class DiscountNotAllowedError(BusinessRuleViolation):
    """Raised when a discount is outside 0-100 or above the configured maximum."""


class AuthenticationError(BusinessRuleViolation):
    """Raised when a username/password pair does not match any user."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced entity is unknown."""


class SaleNotFoundError(MissingReferenceError):
    pass


class ProductNotFoundError(MissingReferenceError):
    pass


class CustomerNotFoundError(MissingReferenceError):
    pass


class UserNotFoundError(MissingReferenceError):
    pass


__all__ = [
    "BusinessRuleViolation",
    "EmptyCartError",
    "OutOfStockError",
    "AlreadyCancelledError",
    "DiscountNotAllowedError",
    "AuthenticationError",
    "MissingReferenceError",
    "SaleNotFoundError",
    "ProductNotFoundError",
    "CustomerNotFoundError",
    "UserNotFoundError",
]
