"""
Order Status State Machine
==========================
Canonical fulfillment states, progress mapping and display metadata.

State flow:
    PENDING -> CONFIRMED -> PREPARING -> READY -> OUT_FOR_DELIVERY -> DELIVERED
    any non-terminal state -> CANCELLED

Transition legality is owned by the fulfillment side. This module only
interprets whatever status string the backing store holds, and every
lookup is total: unknown strings render as a generic "Processing" state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """
    Fulfillment lifecycle states.

    UNKNOWN stands in for any status string outside the canonical list.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Union["OrderStatus", str, None]) -> "OrderStatus":
        """Map a raw status string to a member, falling back to UNKNOWN."""
        if isinstance(value, OrderStatus):
            return value
        if not isinstance(value, str):
            return cls.UNKNOWN

        key = value.strip().lower()
        key = _ALIASES.get(key, key)

        try:
            return cls(key)
        except ValueError:
            return cls.UNKNOWN


# Older rows used "picked_up" for the out-for-delivery step
_ALIASES = {
    "picked_up": "out_for_delivery",
    "out-for-delivery": "out_for_delivery",
    "canceled": "cancelled",
}

FORWARD_SEQUENCE: Tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)

TERMINAL_STATES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


# ============================================================================
# DISPLAY METADATA
# ============================================================================

@dataclass(frozen=True)
class StatusDisplay:
    """Presentation metadata for one status."""
    label: str
    icon: str
    message: str
    color: str


_DISPLAY: Dict[OrderStatus, StatusDisplay] = {
    OrderStatus.PENDING: StatusDisplay(
        "Order Placed", "receipt",
        "Order received and being processed", "yellow"),
    OrderStatus.CONFIRMED: StatusDisplay(
        "Confirmed", "check-circle",
        "Restaurant confirmed your order", "blue"),
    OrderStatus.PREPARING: StatusDisplay(
        "Preparing", "chef-hat",
        "Your food is being prepared", "orange"),
    OrderStatus.READY: StatusDisplay(
        "Ready for Pickup", "truck",
        "Order is ready for pickup/delivery", "purple"),
    OrderStatus.OUT_FOR_DELIVERY: StatusDisplay(
        "Out for Delivery", "truck",
        "Your order is on the way", "indigo"),
    OrderStatus.DELIVERED: StatusDisplay(
        "Delivered", "check-circle",
        "Order has been delivered", "green"),
    OrderStatus.CANCELLED: StatusDisplay(
        "Cancelled", "x-circle",
        "Order has been cancelled", "red"),
}

_FALLBACK_DISPLAY = StatusDisplay(
    "Processing", "clock", "Processing your order", "gray")


def display(status: Union[OrderStatus, str, None]) -> StatusDisplay:
    """Full display metadata for any status value."""
    return _DISPLAY.get(OrderStatus.parse(status), _FALLBACK_DISPLAY)


def display_label(status: Union[OrderStatus, str, None]) -> str:
    return display(status).label


def display_icon(status: Union[OrderStatus, str, None]) -> str:
    return display(status).icon


def status_message(status: Union[OrderStatus, str, None]) -> str:
    return display(status).message


def status_color(status: Union[OrderStatus, str, None]) -> str:
    return display(status).color


# ============================================================================
# PROGRESS
# ============================================================================

def progress(status: Union[OrderStatus, str, None]) -> Optional[float]:
    """
    Percent complete along the forward sequence.

    Returns:
        (index + 1) / 6 * 100 for forward states, None for cancelled or
        unknown statuses (those are not plotted on the progress bar)
    """
    parsed = OrderStatus.parse(status)
    if parsed not in FORWARD_SEQUENCE:
        return None

    return (FORWARD_SEQUENCE.index(parsed) + 1) / len(FORWARD_SEQUENCE) * 100


def is_terminal(status: Union[OrderStatus, str, None]) -> bool:
    """True only for delivered and cancelled."""
    return OrderStatus.parse(status) in TERMINAL_STATES


def timeline(status: Union[OrderStatus, str, None]) -> List[Dict[str, Any]]:
    """
    Forward steps with completed/current flags for a status timeline.

    A status off the forward sequence marks nothing completed.
    """
    parsed = OrderStatus.parse(status)
    current_index = (
        FORWARD_SEQUENCE.index(parsed) if parsed in FORWARD_SEQUENCE else -1
    )

    return [
        {
            "status": step.value,
            "label": _DISPLAY[step].label,
            "icon": _DISPLAY[step].icon,
            "completed": index <= current_index,
            "current": index == current_index,
        }
        for index, step in enumerate(FORWARD_SEQUENCE)
    ]


# ============================================================================
# OBSERVED HISTORY
# ============================================================================

class StatusHistory:
    """
    Records the statuses observed for one order.

    Does not reject anything: a backwards move (e.g. a late replayed
    event) is logged and recorded as-is.
    """

    def __init__(self, order_id: str, initial: Union[OrderStatus, str, None] = None):
        self.order_id = order_id
        self._history: List[Tuple[OrderStatus, str, datetime]] = []

        if initial is not None:
            self.observe(initial)

    @property
    def current(self) -> Optional[OrderStatus]:
        return self._history[-1][0] if self._history else None

    def observe(self, raw_status: Union[OrderStatus, str, None]) -> bool:
        """
        Record a status if it differs from the current one.

        Returns:
            True if the status changed
        """
        status = OrderStatus.parse(raw_status)
        raw = raw_status.value if isinstance(raw_status, OrderStatus) else str(raw_status)

        if self._history and self._history[-1][0] == status:
            return False

        previous = self.current
        if self.is_regression(previous, status):
            logger.warning(
                f"Order {self.order_id} status moved backwards: "
                f"{previous.value} -> {status.value}"
            )
        if status == OrderStatus.UNKNOWN:
            logger.warning(f"Order {self.order_id} has unrecognised status: {raw!r}")

        self._history.append((status, raw, datetime.utcnow()))

        logger.info(
            f"Order {self.order_id} status: "
            f"{previous.value if previous else '-'} -> {status.value}"
        )

        return True

    @staticmethod
    def is_regression(previous: Optional[OrderStatus], status: OrderStatus) -> bool:
        if previous is None:
            return False
        if previous in TERMINAL_STATES:
            return status != previous
        if previous in FORWARD_SEQUENCE and status in FORWARD_SEQUENCE:
            return FORWARD_SEQUENCE.index(status) < FORWARD_SEQUENCE.index(previous)
        return False

    def get_history(self) -> list:
        """Get observed status history."""
        return [
            {"status": status.value, "raw": raw, "observed_at": ts.isoformat()}
            for status, raw, ts in self._history
        ]

    def __repr__(self):
        current = self.current.value if self.current else None
        return f"<StatusHistory order_id={self.order_id} status={current}>"
