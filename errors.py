"""Custom exceptions for the Sufficius API."""


class ShopError(Exception):
    """Base exception for all domain errors."""

    pass


class DatabaseUnavailableError(ShopError):
    """Raised when no database is configured or reachable."""

    def __init__(self):
        super().__init__("Database not available. Check DATABASE_URL and DATABASE_NAME.")


class EmptyCartError(ShopError):
    """Raised when placing an order from a cart with no lines."""

    def __init__(self):
        super().__init__("Cart is empty")


class AddressNotFoundError(ShopError):
    """Raised when the shipping address does not exist or belongs to another user."""

    def __init__(self, address_id: str):
        self.address_id = address_id
        super().__init__("Address not found")


class InsufficientStockError(ShopError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_name: str):
        self.product_name = product_name
        super().__init__(f'Product "{product_name}" has insufficient stock')


class InvalidCouponError(ShopError):
    """Raised for an unknown, inactive or expired coupon when coupons are rejected."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Coupon {code} is invalid or expired")


class InvalidStatusTransitionError(ShopError):
    """Raised when an order cannot move from its current status to the target."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Order cannot move from {current} to {target}")


class InvalidPaymentStatusError(ShopError):
    def __init__(self, status: str, expected: str):
        self.status = status
        self.expected = expected
        super().__init__(f"Payment is {status}; only {expected} payments allowed")


class OrderNotFoundError(ShopError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class PaymentNotFoundError(ShopError):
    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class PermissionDeniedError(ShopError):
    def __init__(self, message: str = "You do not have permission to access this resource"):
        super().__init__(message)


class RateLimitExceededError(ShopError):
    """Raised when a client exceeds its request window."""

    def __init__(self, retry_after: int, message: str = "Too many requests. Try again later."):
        self.retry_after = retry_after
        super().__init__(message)


class ReviewNotFoundError(ShopError):
    def __init__(self, review_id: str):
        self.review_id = review_id
        super().__init__(f"Review not found: {review_id}")


class DuplicateReviewError(ShopError):
    """Raised when a user reviews the same product twice."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("You have already reviewed this product")
