"""
Order Records
=============
Persisted order header and line items, and their row mapping.

Money fields are fixed at creation; the fulfillment side only ever
changes status, payment_status and actual_delivery_time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from money import ZERO, to_money, to_wire
from order_status import OrderStatus

logger = logging.getLogger(__name__)


# ============================================================================
# DELIVERY ADDRESS
# ============================================================================

@dataclass(frozen=True)
class DeliveryAddress:
    """Structured delivery address (stored as a JSON object, not a string)."""
    street: str
    city: str
    state: str
    zip_code: str

    def missing_fields(self) -> List[str]:
        """Names of blank fields."""
        return [
            name for name, value in (
                ("street", self.street),
                ("city", self.city),
                ("state", self.state),
                ("zip_code", self.zip_code),
            )
            if not (value or "").strip()
        ]

    def is_complete(self) -> bool:
        return not self.missing_fields()

    def to_row(self) -> Dict[str, str]:
        return {
            "street": self.street.strip(),
            "city": self.city.strip(),
            "state": self.state.strip(),
            "zipCode": self.zip_code.strip(),
        }

    @classmethod
    def from_row(cls, row: Optional[Mapping[str, Any]]) -> "DeliveryAddress":
        row = row or {}
        return cls(
            street=row.get("street") or "",
            city=row.get("city") or "",
            state=row.get("state") or "",
            zip_code=row.get("zipCode") or row.get("zip_code") or "",
        )

    def format(self) -> str:
        return f"{self.street}, {self.city}, {self.state} {self.zip_code}"


# ============================================================================
# ORDER ITEM
# ============================================================================

@dataclass(frozen=True)
class OrderItem:
    """
    Immutable order line with the price captured at order time.
    """
    order_id: str
    menu_item_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    special_instructions: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        """Insert payload for the order_items table."""
        return {
            "order_id": self.order_id,
            "menu_item_id": self.menu_item_id,
            "quantity": self.quantity,
            "unit_price": to_wire(self.unit_price),
            "total_price": to_wire(self.total_price),
            "special_instructions": self.special_instructions,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OrderItem":
        menu_item = row.get("menu_items") or {}
        return cls(
            id=row.get("id"),
            order_id=str(row.get("order_id") or ""),
            menu_item_id=str(row.get("menu_item_id") or ""),
            quantity=int(row.get("quantity") or 0),
            unit_price=to_money(row.get("unit_price") or 0),
            total_price=to_money(row.get("total_price") or 0),
            special_instructions=row.get("special_instructions"),
            name=menu_item.get("name"),
        )


# ============================================================================
# ORDER
# ============================================================================

@dataclass(frozen=True)
class Order:
    """
    Order header as read back from the store.

    status keeps the raw string; use status_enum for interpretation.
    """
    id: str
    order_number: str
    customer_id: str
    restaurant_id: str
    status: str
    payment_status: Optional[str]
    subtotal: Decimal
    tax_amount: Decimal
    delivery_fee: Decimal
    total_amount: Decimal
    delivery_address: DeliveryAddress
    payment_method: Optional[str] = None
    delivery_instructions: Optional[str] = None
    estimated_delivery_time: Optional[str] = None
    actual_delivery_time: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    restaurant_name: Optional[str] = None
    items: Tuple[OrderItem, ...] = field(default_factory=tuple)

    @property
    def status_enum(self) -> OrderStatus:
        return OrderStatus.parse(self.status)

    def items_total(self) -> Decimal:
        return to_money(sum((item.total_price for item in self.items), ZERO))

    def amounts_reconcile(self) -> bool:
        """Σ items == subtotal and total == subtotal + tax + fee."""
        return (
            self.items_total() == self.subtotal
            and self.total_amount == self.subtotal + self.tax_amount + self.delivery_fee
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Order":
        """Build from an orders row, with optional nested restaurants/order_items."""
        restaurant = row.get("restaurants") or {}
        return cls(
            id=str(row["id"]),
            order_number=row.get("order_number") or "",
            customer_id=str(row.get("customer_id") or ""),
            restaurant_id=str(row.get("restaurant_id") or restaurant.get("id") or ""),
            status=row.get("status") or OrderStatus.PENDING.value,
            payment_status=row.get("payment_status"),
            payment_method=row.get("payment_method"),
            subtotal=to_money(row.get("subtotal") or 0),
            tax_amount=to_money(row.get("tax_amount") or 0),
            delivery_fee=to_money(row.get("delivery_fee") or 0),
            total_amount=to_money(row.get("total_amount") or 0),
            delivery_address=DeliveryAddress.from_row(row.get("delivery_address")),
            delivery_instructions=row.get("delivery_instructions"),
            estimated_delivery_time=row.get("estimated_delivery_time"),
            actual_delivery_time=row.get("actual_delivery_time"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            restaurant_name=restaurant.get("name"),
            items=tuple(OrderItem.from_row(item) for item in row.get("order_items") or []),
        )


def header_row(
    *,
    order_number: str,
    customer_id: str,
    restaurant_id: str,
    subtotal: Decimal,
    tax_amount: Decimal,
    delivery_fee: Decimal,
    total_amount: Decimal,
    delivery_address: DeliveryAddress,
    delivery_instructions: Optional[str],
    payment_method: str,
    estimated_delivery_time: datetime,
) -> Dict[str, Any]:
    """Insert payload for a new orders row (status and payment pending)."""
    return {
        "order_number": order_number,
        "customer_id": customer_id,
        "restaurant_id": restaurant_id,
        "status": OrderStatus.PENDING.value,
        "payment_status": "pending",
        "payment_method": payment_method,
        "subtotal": to_wire(subtotal),
        "tax_amount": to_wire(tax_amount),
        "delivery_fee": to_wire(delivery_fee),
        "total_amount": to_wire(total_amount),
        "delivery_address": delivery_address.to_row(),
        "delivery_instructions": (delivery_instructions or "").strip() or None,
        "estimated_delivery_time": estimated_delivery_time.isoformat(),
    }
