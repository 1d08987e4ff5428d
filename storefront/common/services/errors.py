"""Error kinds raised by the cart, checkout and order services.

Every error carries a stable ``code`` that the HTTP layer returns verbatim
and a ``status`` hint for the response code.
"""

from typing import Optional


class StoreError(Exception):
    code = "store_error"
    status = 400

    def __init__(self, message: str = "", **details) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(StoreError, ValueError):
    code = "validation_error"


class NotFound(StoreError):
    code = "not_found"
    status = 404


class ProductNotFound(NotFound):
    code = "product_not_found"


class ProductInactive(StoreError):
    code = "product_inactive"


class NoInventoryRecord(StoreError):
    code = "no_inventory_record"


class InsufficientStock(StoreError):
    code = "insufficient_stock"
    status = 409

    def __init__(self, sku_id: str, requested: int, available: Optional[int] = None, message: str = "") -> None:
        msg = message or f"Not enough stock for {sku_id}. Available: {available}, Requested: {requested}"
        super().__init__(msg, sku_id=sku_id, requested=requested, available=available)
        self.sku_id = sku_id
        self.requested = requested
        self.available = available


class EmptyCart(StoreError):
    code = "empty_cart"


class IllegalTransition(StoreError):
    code = "illegal_transition"
    status = 409


class NotCancellable(StoreError):
    code = "not_cancellable"
    status = 409


class Forbidden(StoreError):
    code = "forbidden"
    status = 403


class Conflict(StoreError):
    """Lock or version contention that outlived the internal retries."""

    code = "conflict"
    status = 409


class PersistenceFailure(StoreError):
    code = "persistence_failure"
    status = 500


class InventoryInconsistency(PersistenceFailure):
    """Compensation itself failed; stock no longer reconciles with orders."""

    code = "inventory_inconsistency"
