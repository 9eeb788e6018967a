"""Domain error taxonomy for orders, payments and ERP sync.

Every error carries a stable ``code`` that the HTTP layer returns as
``detail`` and a human readable message. The HTTP status is decided by the
error kind in ``shop.exceptions.exception_handler``.
"""


class OrderError(Exception):
    """Base class for domain errors.

    Attributes:
        code: Stable machine readable error code.
        message: Human readable description.
    """

    code = "ORDER_ERROR"

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code


class ValidationError(OrderError):
    """Rejected input (empty cart, missing address, bad quantity)."""

    code = "VALIDATION_ERROR"


class NotFoundError(OrderError):
    code = "NOT_FOUND"


class ConflictError(OrderError):
    """The request is valid but conflicts with the current state."""

    code = "CONFLICT"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, current, target):
        super().__init__(f"cannot move order from {current.value} to {target.value}")
        self.current = current
        self.target = target


class OrderNotCancellable(ConflictError):
    code = "ORDER_NOT_CANCELLABLE"


class CouponNotApplicable(ConflictError):
    code = "COUPON_NOT_APPLICABLE"


class OutOfStock(ConflictError):
    """One or more tracked products cannot cover the requested quantity.

    Attributes:
        skus: The SKUs that were short, in request order.
    """

    code = "OUT_OF_STOCK"

    def __init__(self, skus=(), message: str = ""):
        self.skus = list(skus)
        super().__init__(message or f"insufficient stock for {', '.join(self.skus) or 'items'}")


class GatewayError(OrderError):
    """The payment provider answered with a non-success status.

    Attributes:
        status: Provider status code, when the provider sent one.
    """

    code = "GATEWAY_ERROR"

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SyncError(OrderError):
    """ERP call failure. Recorded on the order or product, never raised to callers."""

    code = "SYNC_ERROR"
