"""
Unified base exception classes for all services.

Every engine error extends ServiceError so routers can translate any of them
with a single `except ServiceError` handler. None of these are retried: they
describe business facts (a shortfall, an illegal transition), not contention.
"""
from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    def to_detail(self) -> Any:
        """Payload placed in the HTTP error body."""
        return self.message


class InsufficientStockError(ServiceError):
    """
    Admission or confirm-time shortfall.

    Carries one entry per unsatisfied stock item so POS and order flows can
    react per line instead of failing the whole cart opaquely.
    """

    def __init__(self, items: list[dict]):
        self.items = items
        if len(items) == 1:
            it = items[0]
            message = (
                f"Insufficient stock for product {it['product_id']}: "
                f"requested {it['requested']}, available {it['available']}"
            )
        else:
            products = ", ".join(str(it["product_id"]) for it in items)
            message = f"Insufficient stock for products {products}"
        super().__init__(message, 409)

    def to_detail(self) -> Any:
        return {"message": self.message, "items": self.items}


class InvalidMovementDirectionError(ServiceError):
    def __init__(self, kind: str, quantity: int):
        self.kind = kind
        self.quantity = quantity
        super().__init__(
            f"Quantity {quantity} does not match the direction of movement '{kind}'", 400
        )


class ReservationNotFoundError(ServiceError):
    def __init__(self, reservation_id: int):
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} not found", 404)


class ReservationNotActiveError(ServiceError):
    def __init__(self, reservation_id: int, state: str):
        self.reservation_id = reservation_id
        self.state = state
        super().__init__(f"Reservation {reservation_id} is {state}, expected active", 409)

    def to_detail(self) -> Any:
        return {"message": self.message, "reservation_id": self.reservation_id, "state": self.state}


class StockItemNotFoundError(ServiceError):
    def __init__(self, product_id: int, variant_id: Optional[int] = None, branch_id: Optional[int] = None):
        self.product_id = product_id
        self.variant_id = variant_id
        self.branch_id = branch_id
        scope = f"product {product_id}"
        if variant_id is not None:
            scope += f", variant {variant_id}"
        if branch_id is not None:
            scope += f", branch {branch_id}"
        super().__init__(f"Stock item not found ({scope})", 404)


class BatchPartialFailure(ServiceError):
    """Some items of a best-effort batch could not be processed."""

    def __init__(self, items: list[dict]):
        self.items = items
        super().__init__(f"{len(items)} item(s) of the batch could not be processed", 409)

    def to_detail(self) -> Any:
        return {"message": self.message, "items": self.items}


class InvalidQuantityError(ServiceError):
    def __init__(self, message: str = "Quantity must be a positive integer"):
        super().__init__(message, 400)


class InvalidTTLError(ServiceError):
    def __init__(self, minutes: int, limit: int):
        super().__init__(f"Duration must be between 1 and {limit} minutes, got {minutes}", 400)


class BatchTooLargeError(ServiceError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Batch of {size} items exceeds the limit of {limit}", 400)
