"""
Order Submission (Production)
=============================
Turns a priced cart into an order header plus its line items.

Write sequence:
1. Validate locally (no writes on failure)
2. Insert order header (status/payment pending, amounts re-derived
   from the cart, estimated delivery = now + window)
3. Insert one order_items row per cart line (price snapshot)

Success means both writes landed. If step 3 fails after step 2, a
PartialOrderWriteError carries the header id; recovery is retry_items()
against that id, never a second header.
Clearing the cart is the caller's job once submit() returns.
"""

import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog
from prometheus_client import Counter

from cart import Cart, PricedTotals, Restaurant
from config import OrderingConfig
from errors import (
    NotAuthenticatedError,
    OrderValidationError,
    PartialOrderWriteError,
    StoreError,
)
from money import ZERO
from order import DeliveryAddress, OrderItem, header_row
from store import OrderStore, Row

logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_submissions_total = Counter(
    'order_submissions_total',
    'Order submissions by outcome',
    ['result']
)
order_item_retries_total = Counter(
    'order_item_retries_total',
    'Caller-driven retries of order item inserts',
    ['result']
)


@dataclass(frozen=True)
class SubmittedOrder:
    """Result of a successful submission."""
    order_id: str
    order_number: str
    totals: PricedTotals
    item_count: int


def generate_order_number(prefix: str = "ORD") -> str:
    """
    Locally seeded order number: PREFIX-<epoch millis>-<6 hex>.

    The orders.order_number column is unique; a server trigger may
    replace this value, and the persisted one is what gets reported.
    """
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def build_item_rows(order_id: str, cart: Cart) -> List[Row]:
    """order_items payloads for a cart, one per line, prices snapshotted."""
    return [
        OrderItem(
            order_id=order_id,
            menu_item_id=line.item_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total_price=line.line_total,
            special_instructions=line.special_instructions,
        ).to_row()
        for line in cart.lines
    ]


class OrderSubmission:
    """
    Order submission transaction against a record store.
    """

    def __init__(self, store: OrderStore, settings: Optional[OrderingConfig] = None):
        self.store = store
        self.settings = settings or OrderingConfig()

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def validate(
        self,
        cart: Cart,
        restaurant: Restaurant,
        delivery_address: DeliveryAddress,
        payment_method: str
    ) -> List[str]:
        """
        Collect every precondition failure.

        Returns:
            Error messages (empty if the order can be placed)
        """
        errors = []

        if cart.is_empty:
            errors.append("Cart is empty")

        if cart.restaurant_id != str(restaurant.id):
            errors.append(
                f"Cart is for restaurant {cart.restaurant_id}, not {restaurant.id}"
            )

        if not cart.is_empty and not cart.meets_minimum(restaurant):
            errors.append(
                f"Minimum order not met: subtotal ${cart.subtotal()} "
                f"< ${restaurant.minimum_order}"
            )

        missing = delivery_address.missing_fields()
        if missing:
            errors.append(f"Incomplete delivery address: missing {', '.join(missing)}")

        if not (payment_method or "").strip():
            errors.append("Payment method is required")

        for line in cart.lines:
            if line.quantity < 1:
                errors.append(f"Invalid quantity for {line.name}: {line.quantity}")
            if line.unit_price < ZERO:
                errors.append(f"Invalid price for {line.name}: {line.unit_price}")

        return errors

    # ========================================================================
    # SUBMIT
    # ========================================================================

    async def submit(
        self,
        cart: Cart,
        restaurant: Restaurant,
        customer_id: Optional[str],
        delivery_address: DeliveryAddress,
        delivery_instructions: Optional[str] = None,
        payment_method: Optional[str] = None
    ) -> SubmittedOrder:
        """
        Persist the cart as an order.

        Raises:
            NotAuthenticatedError: No customer id
            OrderValidationError: Preconditions failed, nothing written
            StoreError: Header insert failed, nothing written
            PartialOrderWriteError: Header written, items not
        """
        if not customer_id:
            order_submissions_total.labels(result='unauthenticated').inc()
            raise NotAuthenticatedError("Sign in to place an order")

        payment_method = payment_method or self.settings.default_payment_method

        errors = self.validate(cart, restaurant, delivery_address, payment_method)
        if errors:
            order_submissions_total.labels(result='invalid').inc()
            logger.warning(
                "order_validation_failed",
                restaurant_id=restaurant.id,
                errors=errors
            )
            raise OrderValidationError(errors)

        # Re-derived from the cart lines at submission time
        totals = cart.totals(restaurant)
        now = datetime.now(timezone.utc)

        header = header_row(
            order_number=generate_order_number(self.settings.order_number_prefix),
            customer_id=customer_id,
            restaurant_id=restaurant.id,
            subtotal=totals.subtotal,
            tax_amount=totals.tax,
            delivery_fee=totals.delivery_fee,
            total_amount=totals.total,
            delivery_address=delivery_address,
            delivery_instructions=delivery_instructions,
            payment_method=payment_method,
            estimated_delivery_time=now + timedelta(
                minutes=self.settings.delivery_window_minutes
            ),
        )

        try:
            persisted = await self.store.insert_order(header)
        except StoreError:
            order_submissions_total.labels(result='header_failed').inc()
            logger.error(
                "order_header_insert_failed",
                restaurant_id=restaurant.id,
                order_number=header["order_number"]
            )
            raise

        order_id = str(persisted["id"])
        order_number = persisted.get("order_number") or header["order_number"]

        logger.info(
            "order_header_created",
            order_id=order_id,
            order_number=order_number,
            total=str(totals.total)
        )

        try:
            await self.store.insert_order_items(build_item_rows(order_id, cart))
        except Exception as e:
            order_submissions_total.labels(result='partial').inc()
            logger.error(
                "order_items_insert_failed",
                order_id=order_id,
                order_number=order_number,
                error=str(e)
            )
            raise PartialOrderWriteError(order_id, order_number, e, totals.subtotal) from e

        order_submissions_total.labels(result='success').inc()
        logger.info(
            "order_submitted",
            order_id=order_id,
            order_number=order_number,
            lines=len(cart),
            items=cart.item_count()
        )

        return SubmittedOrder(
            order_id=order_id,
            order_number=order_number,
            totals=totals,
            item_count=cart.item_count(),
        )

    async def retry_items(
        self,
        error: PartialOrderWriteError,
        cart: Cart,
        restaurant: Restaurant
    ) -> SubmittedOrder:
        """
        Re-run the line item insert for a header left by a partial write.

        The cart must be the one originally submitted (still uncleared):
        its subtotal has to match the one written on the header.

        Raises:
            OrderValidationError: Cart is empty or no longer matches the header
            PartialOrderWriteError: Items failed again (same header id)
        """
        if cart.is_empty:
            raise OrderValidationError(["Cart is empty"])

        if error.subtotal is not None and cart.subtotal() != error.subtotal:
            order_item_retries_total.labels(result='mismatch').inc()
            logger.warning(
                "order_items_retry_mismatch",
                order_id=error.order_id,
                header_subtotal=str(error.subtotal),
                cart_subtotal=str(cart.subtotal())
            )
            raise OrderValidationError([
                f"Cart changed since order {error.order_number or error.order_id} "
                f"was created: subtotal ${cart.subtotal()} != ${error.subtotal}"
            ])

        try:
            await self.store.insert_order_items(build_item_rows(error.order_id, cart))
        except Exception as e:
            order_item_retries_total.labels(result='failed').inc()
            logger.error("order_items_retry_failed", order_id=error.order_id, error=str(e))
            raise PartialOrderWriteError(
                error.order_id, error.order_number, e, error.subtotal
            ) from e

        order_item_retries_total.labels(result='success').inc()
        logger.info("order_items_retry_succeeded", order_id=error.order_id)

        return SubmittedOrder(
            order_id=error.order_id,
            order_number=error.order_number or "",
            totals=cart.totals(restaurant),
            item_count=cart.item_count(),
        )
