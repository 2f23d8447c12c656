"""
Ordering Errors
===============
Failure kinds raised to the cart, checkout and tracking boundaries.

- OrderValidationError: local input problem, nothing was written
- NotAuthenticatedError: no customer session
- PartialOrderWriteError: order header persisted, line items not
- OrderUnavailableError: order missing, not owned, or unreadable
- StoreError / RealtimeTransportError: backend and push channel failures
"""

from decimal import Decimal
from typing import List, Optional


class OrderingError(Exception):
    """Base class for order lifecycle failures."""
    pass


class OrderValidationError(OrderingError):
    """
    Raised before any write when input is unusable.

    Always recoverable by correcting the input.
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid order")


class NotAuthenticatedError(OrderingError):
    """Raised when an operation needs a signed-in customer and there is none."""

    def __init__(self, message: str = "Customer must be signed in"):
        super().__init__(message)


class PartialOrderWriteError(OrderingError):
    """
    Order header was persisted but its line items were not.

    Carries the header id so the caller can retry the item insert
    against it (or flag it for manual reconciliation) instead of
    creating a second header.
    """

    def __init__(
        self,
        order_id: str,
        order_number: Optional[str],
        cause: Exception,
        subtotal: Optional[Decimal] = None
    ):
        self.order_id = order_id
        self.order_number = order_number
        self.cause = cause
        # Subtotal written on the header; retried items must add up to it
        self.subtotal = subtotal
        super().__init__(
            f"Order {order_id} was created but its items could not be saved: {cause}"
        )


class OrderUnavailableError(OrderingError):
    """Order could not be found for this customer, or could not be read."""

    def __init__(self, order_id: str, reason: str = "not found"):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Order {order_id} unavailable: {reason}")


class StoreError(OrderingError):
    """Backend read or write failed."""
    pass


class RealtimeTransportError(StoreError):
    """Push subscription failed or dropped. Non-fatal for tracking."""
    pass
