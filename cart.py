"""
Cart Module
===========
In-memory cart for one restaurant and its price computation.

Rules:
- One cart, one restaurant (lines are never mixed)
- Lines are immutable values; quantity changes replace the line
- Quantity 0 removes the line, it is never stored as zero
- Totals are recomputed on every call, never cached
- Minimum order is checked against the subtotal only

The cart is owned by a single checkout session and passed around
explicitly. to_dict()/from_dict() are the only persistence hooks.
"""

import logging
from dataclasses import dataclass, asdict, replace
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from errors import OrderValidationError
from money import ZERO, to_money

logger = logging.getLogger(__name__)


TAX_RATE = Decimal("0.08")


# ============================================================================
# CATALOGUE VALUES (read from the store)
# ============================================================================

@dataclass(frozen=True)
class Restaurant:
    """Restaurant fields the pricing rules depend on."""
    id: str
    name: str
    delivery_fee: Decimal
    minimum_order: Decimal
    phone: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Restaurant":
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            delivery_fee=to_money(row.get("delivery_fee") or 0),
            minimum_order=to_money(row.get("minimum_order") or 0),
            phone=row.get("phone"),
        )


@dataclass(frozen=True)
class MenuItem:
    """A priced menu entry that can be put in a cart."""
    id: str
    name: str
    price: Decimal
    restaurant_id: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MenuItem":
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            price=to_money(row["price"]),
            restaurant_id=str(row["restaurant_id"]),
        )


# ============================================================================
# CART LINE
# ============================================================================

@dataclass(frozen=True)
class CartLine:
    """
    Immutable cart line.

    with_quantity()/with_instructions() are the only way to "modify".
    """
    item_id: str
    name: str
    unit_price: Decimal
    quantity: int
    special_instructions: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)

    def with_quantity(self, quantity: int) -> "CartLine":
        return replace(self, quantity=quantity)

    def with_instructions(self, special_instructions: Optional[str]) -> "CartLine":
        return replace(self, special_instructions=special_instructions or None)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["unit_price"] = str(self.unit_price)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CartLine":
        return cls(
            item_id=str(data["item_id"]),
            name=data.get("name") or "",
            unit_price=to_money(data["unit_price"]),
            quantity=int(data["quantity"]),
            special_instructions=data.get("special_instructions") or None,
        )


# ============================================================================
# PRICED TOTALS
# ============================================================================

@dataclass(frozen=True)
class PricedTotals:
    """Derived amounts for a cart at one point in time."""
    subtotal: Decimal
    tax: Decimal
    delivery_fee: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {key: str(value) for key, value in asdict(self).items()}


def price(subtotal: Decimal, delivery_fee: Decimal) -> PricedTotals:
    """Apply tax and delivery fee to a subtotal."""
    subtotal = to_money(subtotal)
    delivery_fee = to_money(delivery_fee)
    tax = to_money(subtotal * TAX_RATE)

    return PricedTotals(
        subtotal=subtotal,
        tax=tax,
        delivery_fee=delivery_fee,
        total=subtotal + tax + delivery_fee,
    )


# ============================================================================
# CART
# ============================================================================

class Cart:
    """
    Insertion-ordered collection of CartLine for one restaurant.
    """

    def __init__(self, restaurant_id: str):
        if not restaurant_id:
            raise OrderValidationError(["Cart needs a restaurant"])

        self.restaurant_id = str(restaurant_id)
        self._lines: Dict[str, CartLine] = {}

    # ========================================================================
    # MUTATION
    # ========================================================================

    def add_item(
        self,
        item: MenuItem,
        quantity: int = 1,
        special_instructions: Optional[str] = None
    ) -> CartLine:
        """
        Add a menu item, or increase its quantity if already in the cart.

        Args:
            item: Menu item from this cart's restaurant
            quantity: Units to add (>= 1)
            special_instructions: Replaces the line's instructions when given

        Returns:
            The resulting line

        Raises:
            OrderValidationError: Wrong restaurant, bad quantity or price
        """
        if str(item.restaurant_id) != self.restaurant_id:
            raise OrderValidationError([
                f"{item.name} belongs to restaurant {item.restaurant_id}, "
                f"cart is for {self.restaurant_id}"
            ])

        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise OrderValidationError([f"Invalid quantity for {item.name}: {quantity!r}"])

        unit_price = to_money(item.price)
        if unit_price < ZERO:
            raise OrderValidationError([f"Invalid price for {item.name}: {unit_price}"])

        existing = self._lines.get(str(item.id))

        if existing:
            line = existing.with_quantity(existing.quantity + quantity)
            if special_instructions is not None:
                line = line.with_instructions(special_instructions)
        else:
            line = CartLine(
                item_id=str(item.id),
                name=item.name,
                unit_price=unit_price,
                quantity=quantity,
                special_instructions=special_instructions or None,
            )

        self._lines[line.item_id] = line

        logger.debug(f"Cart {self.restaurant_id}: {line.name} x{line.quantity}")

        return line

    def add_line(self, line: CartLine) -> CartLine:
        """
        Add a prebuilt line (e.g. from a past order), merging quantities.

        The line keeps its own unit price, rounded to the cent.

        Raises:
            OrderValidationError: Bad quantity or price
        """
        line = replace(line, unit_price=to_money(line.unit_price))

        if line.quantity < 1:
            raise OrderValidationError([f"Invalid quantity for {line.name}: {line.quantity}"])
        if line.unit_price < ZERO:
            raise OrderValidationError([f"Invalid price for {line.name}: {line.unit_price}"])

        existing = self._lines.get(line.item_id)
        if existing:
            line = existing.with_quantity(existing.quantity + line.quantity)

        self._lines[line.item_id] = line
        return line

    def set_quantity(self, item_id: str, quantity: int) -> Optional[CartLine]:
        """
        Set a line's quantity; 0 removes it.

        Unknown item ids are ignored.

        Returns:
            The updated line, or None if removed/absent

        Raises:
            OrderValidationError: Negative or non-integer quantity
        """
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
            raise OrderValidationError([f"Invalid quantity: {quantity!r}"])

        item_id = str(item_id)
        existing = self._lines.get(item_id)

        if existing is None:
            return None

        if quantity == 0:
            del self._lines[item_id]
            logger.debug(f"Cart {self.restaurant_id}: removed {existing.name}")
            return None

        line = existing.with_quantity(quantity)
        self._lines[item_id] = line
        return line

    def remove_item(self, item_id: str) -> None:
        self.set_quantity(item_id, 0)

    def set_instructions(self, item_id: str, special_instructions: Optional[str]) -> Optional[CartLine]:
        """Attach special instructions to a line (None/"" clears them)."""
        existing = self._lines.get(str(item_id))
        if existing is None:
            return None

        line = existing.with_instructions(special_instructions)
        self._lines[line.item_id] = line
        return line

    def clear(self) -> None:
        self._lines.clear()

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def lines(self) -> List[CartLine]:
        """Lines in insertion order (a copy)."""
        return list(self._lines.values())

    @property
    def is_empty(self) -> bool:
        return not self._lines

    def get_line(self, item_id: str) -> Optional[CartLine]:
        return self._lines.get(str(item_id))

    def item_count(self) -> int:
        """Total units across all lines."""
        return sum(line.quantity for line in self._lines.values())

    def subtotal(self) -> Decimal:
        return to_money(sum((line.line_total for line in self._lines.values()), ZERO))

    def totals(self, restaurant: Restaurant) -> PricedTotals:
        """Price the current lines. Pure, never mutates the cart."""
        return price(self.subtotal(), restaurant.delivery_fee)

    def meets_minimum(self, restaurant: Restaurant) -> bool:
        """Subtotal (not total) against the restaurant's minimum order."""
        return self.subtotal() >= to_money(restaurant.minimum_order)

    # ========================================================================
    # SERIALISATION
    # ========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restaurant_id": self.restaurant_id,
            "lines": [line.to_dict() for line in self._lines.values()],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Cart":
        """
        Rebuild a cart saved with to_dict().

        Raises:
            OrderValidationError: Malformed data or a zero/negative quantity
        """
        try:
            cart = cls(data["restaurant_id"])
            for raw in data.get("lines") or []:
                line = CartLine.from_dict(raw)
                if line.quantity < 1:
                    raise OrderValidationError([f"Invalid quantity for {line.name}: {line.quantity}"])
                cart._lines[line.item_id] = line
        except (KeyError, TypeError, ValueError) as e:
            raise OrderValidationError([f"Malformed cart data: {e}"])

        return cart

    def __len__(self):
        return len(self._lines)

    def __repr__(self):
        return f"<Cart restaurant_id={self.restaurant_id} lines={len(self._lines)}>"
