"""
Error taxonomy

Services raise these; main.py turns them into JSON responses with the
matching HTTP status.
"""


class MarketError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketError):
    status_code = 400
    code = "validation_error"


class NotFoundError(MarketError):
    status_code = 404
    code = "not_found"


class ConflictError(MarketError):
    status_code = 409
    code = "conflict"


class InsufficientStockError(ConflictError):
    code = "insufficient_stock"

    def __init__(self, product_id, name=None, missing=False):
        label = name or str(product_id)
        if missing:
            message = f"Product {label} no longer exists"
        else:
            message = f"Insufficient stock for {label}"
        super().__init__(message)
        self.product_id = product_id
        self.missing = missing


class AlreadyCancelledError(ConflictError):
    code = "already_cancelled"

    def __init__(self, message: str = "Order is already cancelled"):
        super().__init__(message)


class AuthorizationError(MarketError):
    status_code = 403
    code = "forbidden"
