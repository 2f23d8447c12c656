"""
Order History
=============
Past orders for the signed-in customer, and "order again".
"""

import logging
from typing import List

from cart import Cart, CartLine, Restaurant
from errors import OrderUnavailableError, OrderValidationError, StoreError
from order import Order
from store import OrderStore

logger = logging.getLogger(__name__)


async def list_orders(store: OrderStore, customer_id: str) -> List[Order]:
    """
    Customer's orders with restaurant and items, newest first.

    Raises:
        StoreError: Backend failure
    """
    rows = await store.list_orders(customer_id)
    orders = [Order.from_row(row) for row in rows]

    logger.info(f"Loaded {len(orders)} orders for customer {customer_id}")

    return orders


async def get_order(store: OrderStore, order_id: str, customer_id: str) -> Order:
    """
    One order owned by the customer.

    Raises:
        OrderUnavailableError: Not found, not owned, or fetch failed
    """
    try:
        row = await store.fetch_order(order_id, customer_id)
    except StoreError as e:
        raise OrderUnavailableError(order_id, str(e)) from e

    if not row:
        raise OrderUnavailableError(order_id)

    return Order.from_row(row)


def reorder(order: Order, restaurant: Restaurant) -> Cart:
    """
    New cart holding the items of a past order.

    Unit prices are the ones captured on the order, not today's menu
    prices; checkout re-prices from these lines.

    Raises:
        OrderValidationError: Restaurant mismatch or order has no items
    """
    if str(restaurant.id) != str(order.restaurant_id):
        raise OrderValidationError([
            f"Order {order.order_number} is from restaurant {order.restaurant_id}, "
            f"not {restaurant.id}"
        ])

    cart = Cart(restaurant.id)

    for item in order.items:
        if item.quantity < 1:
            logger.warning(
                f"Skipping item {item.menu_item_id} with quantity {item.quantity} "
                f"in order {order.order_number}"
            )
            continue

        cart.add_line(CartLine(
            item_id=str(item.menu_item_id),
            name=item.name or "",
            unit_price=item.unit_price,
            quantity=item.quantity,
            special_instructions=item.special_instructions or None,
        ))

    if cart.is_empty:
        raise OrderValidationError([f"Order {order.order_number} has no items to reorder"])

    logger.info(f"Reorder of {order.order_number}: {len(cart)} lines")

    return cart
