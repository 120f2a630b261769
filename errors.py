"""Domain exceptions for the storefront backend.

Each exception carries the HTTP status it maps to; `main.py` turns them into
`{"detail": ..., "error_type": ...}` JSON responses.
"""
from typing import Iterable, Optional


class StoreError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500


class ServiceUnavailableError(StoreError):
    status_code = 503

    def __init__(self, message: str = "Database not configured"):
        super().__init__(message)


# --- 400: bad input ---


class ValidationError(StoreError):
    """Raised for missing or malformed input."""

    status_code = 400


class MissingShippingFieldsError(ValidationError):
    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(f"Missing shipping fields: {', '.join(self.missing)}")


class CouponRejectedError(ValidationError):
    """Raised when a coupon fails one of its eligibility rules."""

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot change order status from {current} to {target}")


# --- 401 / 403 ---


class AuthenticationError(StoreError):
    status_code = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class PermissionDeniedError(StoreError):
    status_code = 403

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


# --- 404 ---


class NotFoundError(StoreError):
    status_code = 404


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found")


class CouponNotFoundError(NotFoundError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Coupon code not found")


# --- 400: constraint violations ---


class ConflictError(StoreError):
    status_code = 400


class InsufficientStockError(ConflictError):
    def __init__(self, product_name: str, available: Optional[int] = None):
        self.product_name = product_name
        self.available = available
        msg = f"Insufficient stock for {product_name}"
        if available is not None:
            msg = f"{msg}. Available: {available}"
        super().__init__(msg)


class CouponLimitError(ConflictError):
    def __init__(self, message: str = "Coupon usage limit reached"):
        super().__init__(message)


class DuplicateCouponError(ConflictError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Coupon code already exists")


class ConcurrentUpdateError(ConflictError):
    def __init__(self, message: str = "Order was modified concurrently, retry the request"):
        super().__init__(message)


# --- 400: integrity ---


class IntegrityError(StoreError):
    status_code = 400


class SignatureMismatchError(IntegrityError):
    def __init__(self):
        super().__init__("Invalid signature")


class AmountMismatchError(IntegrityError):
    def __init__(self, expected: float, received: str):
        self.expected = expected
        self.received = received
        super().__init__("Payment amount does not match order total")


# --- reviews ---


class ReviewNotFoundError(NotFoundError):
    def __init__(self, review_id: str):
        self.review_id = review_id
        super().__init__("Review not found")


class DuplicateReviewError(ConflictError):
    def __init__(self):
        super().__init__("You have already reviewed this product from this order")
