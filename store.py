"""
Record Store Contract
=====================
What the order lifecycle needs from the data tier.

db.SupabaseStore is the production implementation. Every method is a
suspension point; implementations raise errors.StoreError on backend
failure and return None / [] for "no rows".
"""

from typing import Any, Callable, Dict, List, Optional

Row = Dict[str, Any]

# on_change(changed_columns) for each UPDATE event, in arrival order
ChangeCallback = Callable[[Row], None]

# on_status(status, error) for channel lifecycle ("SUBSCRIBED", "CHANNEL_ERROR", ...)
StatusCallback = Callable[[str, Optional[Exception]], None]


class OrderChannel:
    """Open push subscription for one order."""

    async def close(self) -> None:
        raise NotImplementedError


class OrderStore:
    """Async record store consumed by checkout, tracking and history."""

    async def fetch_restaurant(self, restaurant_id: str) -> Optional[Row]:
        raise NotImplementedError

    async def fetch_order(self, order_id: str, customer_id: str) -> Optional[Row]:
        """One order owned by customer_id, with nested restaurant and items."""
        raise NotImplementedError

    async def list_orders(self, customer_id: str) -> List[Row]:
        """Customer's orders with restaurant and items, newest first."""
        raise NotImplementedError

    async def insert_order(self, row: Row) -> Row:
        """Insert one order header and return the persisted row (with id)."""
        raise NotImplementedError

    async def insert_order_items(self, rows: List[Row]) -> List[Row]:
        raise NotImplementedError

    async def subscribe_order_updates(
        self,
        order_id: str,
        on_change: ChangeCallback,
        on_status: Optional[StatusCallback] = None
    ) -> OrderChannel:
        """Subscribe to UPDATE events on orders filtered to one id."""
        raise NotImplementedError
