"""
Error kinds raised by the service layer.

Every error carries the HTTP status it maps to; ``main.py`` turns them into
``{"detail": ...}`` responses.
"""


class ShopError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(ShopError):
    status_code = 400
    default_detail = "Invalid request"


class InvalidOrderRequest(ValidationError):
    default_detail = "Invalid order request"


class Unauthorized(ShopError):
    status_code = 401
    default_detail = "Unauthorized"


class Forbidden(ShopError):
    status_code = 403
    default_detail = "Forbidden"


class NotFound(ShopError):
    status_code = 404
    default_detail = "Not found"


class ProductNotFound(NotFound):
    default_detail = "Product not found"


class OrderNotFound(NotFound):
    default_detail = "Order not found"


class CartNotFound(NotFound):
    default_detail = "Cart not found"


class PayoutNotFound(NotFound):
    default_detail = "Payout not found"


class Conflict(ShopError):
    status_code = 409
    default_detail = "Conflict"


class InsufficientStock(Conflict):
    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}"
        )


class AlreadyPaid(Conflict):
    default_detail = "Order is already paid"


class CancellationWindowExpired(Conflict):
    default_detail = "Cancellation window has expired"


class InvalidStatusTransition(Conflict):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move from '{current}' to '{target}'")


class InsufficientBalance(Conflict):
    default_detail = "Requested amount exceeds available balance"


class InternalError(ShopError):
    pass
