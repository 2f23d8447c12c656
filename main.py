"""
Ordering Service (Production)
=============================
Entry point for the customer-facing order lifecycle.

Wires the customer session, the record store, checkout and realtime
tracking together:

- place_order: session -> restaurant fetch -> submit
- track_order: session -> initial fetch -> live updates
- order_history / get_order / reorder: past orders

Every operation that reads or writes customer data requires a session
and raises NotAuthenticatedError before touching the store otherwise.
"""

from typing import List, Optional

import structlog
from prometheus_client import Counter

from cart import Cart, Restaurant
from checkout import OrderSubmission, SubmittedOrder
from config import Config, OrderingConfig, get_config, validate_configuration
from db import SupabaseStore
from errors import (
    NotAuthenticatedError,
    OrderValidationError,
    PartialOrderWriteError,
)
from history import get_order, list_orders, reorder
from logging_config import add_context, configure_logging
from order import DeliveryAddress, Order
from session import SessionProvider, SupabaseSessionProvider, require_customer_id
from store import OrderStore
from tracking import ErrorCallback, OrderTracker, OrderWatch, UpdateCallback

logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

ordering_requests_total = Counter(
    'ordering_requests_total',
    'Ordering service calls by operation and outcome',
    ['operation', 'result']
)


class OrderingService:
    """
    Customer-facing facade over checkout, tracking and history.
    """

    def __init__(
        self,
        store: OrderStore,
        sessions: SessionProvider,
        settings: Optional[OrderingConfig] = None
    ):
        self.store = store
        self.sessions = sessions
        self.settings = settings or OrderingConfig()

        self.submission = OrderSubmission(store, self.settings)
        self.tracker = OrderTracker(store)

        self._watches: List[OrderWatch] = []

    # ========================================================================
    # HELPERS
    # ========================================================================

    async def _customer_id(self, operation: str) -> str:
        try:
            customer_id = await require_customer_id(self.sessions)
        except NotAuthenticatedError:
            ordering_requests_total.labels(operation=operation, result='unauthenticated').inc()
            logger.warning("ordering_unauthenticated", operation=operation)
            raise

        add_context(customer_id=customer_id)
        return customer_id

    async def _restaurant(self, restaurant_id: str) -> Restaurant:
        """
        Raises:
            OrderValidationError: Restaurant does not exist
            StoreError: Backend failure
        """
        row = await self.store.fetch_restaurant(restaurant_id)
        if not row:
            raise OrderValidationError([f"Restaurant {restaurant_id} not found"])
        return Restaurant.from_row(row)

    # ========================================================================
    # CHECKOUT
    # ========================================================================

    async def place_order(
        self,
        cart: Cart,
        delivery_address: DeliveryAddress,
        delivery_instructions: Optional[str] = None,
        payment_method: Optional[str] = None
    ) -> SubmittedOrder:
        """
        Submit the cart for the signed-in customer.

        The cart is left untouched; clear it once this returns.

        Raises:
            NotAuthenticatedError: No session
            OrderValidationError: Input problems (nothing written)
            StoreError: Header insert or restaurant fetch failed
            PartialOrderWriteError: Header written, items not
        """
        customer_id = await self._customer_id("place_order")
        restaurant = await self._restaurant(cart.restaurant_id)

        try:
            submitted = await self.submission.submit(
                cart,
                restaurant,
                customer_id,
                delivery_address,
                delivery_instructions=delivery_instructions,
                payment_method=payment_method,
            )
        except PartialOrderWriteError:
            ordering_requests_total.labels(operation='place_order', result='partial').inc()
            raise
        except OrderValidationError:
            ordering_requests_total.labels(operation='place_order', result='invalid').inc()
            raise

        ordering_requests_total.labels(operation='place_order', result='success').inc()
        logger.info(
            "order_placed",
            order_id=submitted.order_id,
            order_number=submitted.order_number,
            restaurant=restaurant.name
        )

        return submitted

    async def retry_order_items(
        self,
        error: PartialOrderWriteError,
        cart: Cart
    ) -> SubmittedOrder:
        """
        Retry the line items of a partially written order.

        Raises:
            NotAuthenticatedError: No session
            PartialOrderWriteError: Items failed again
        """
        await self._customer_id("retry_order_items")
        restaurant = await self._restaurant(cart.restaurant_id)

        return await self.submission.retry_items(error, cart, restaurant)

    # ========================================================================
    # TRACKING
    # ========================================================================

    async def track_order(
        self,
        order_id: str,
        on_update: UpdateCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> OrderWatch:
        """
        Watch one of the customer's orders.

        Raises:
            NotAuthenticatedError: No session
            OrderUnavailableError: Order not found, not owned, or unreadable
        """
        customer_id = await self._customer_id("track_order")

        watch = await self.tracker.watch(order_id, customer_id, on_update, on_error)

        # Watches the caller already unsubscribed need no shutdown
        self._watches = [w for w in self._watches if not w.is_closed]
        self._watches.append(watch)

        ordering_requests_total.labels(operation='track_order', result='success').inc()

        return watch

    # ========================================================================
    # HISTORY
    # ========================================================================

    async def order_history(self) -> List[Order]:
        customer_id = await self._customer_id("order_history")
        return await list_orders(self.store, customer_id)

    async def get_order(self, order_id: str) -> Order:
        customer_id = await self._customer_id("get_order")
        return await get_order(self.store, order_id, customer_id)

    async def reorder(self, order_id: str) -> Cart:
        """
        Cart prefilled from a past order (prices as ordered).

        Raises:
            NotAuthenticatedError: No session
            OrderUnavailableError: Order not found or not owned
            OrderValidationError: Restaurant gone or order has no items
        """
        customer_id = await self._customer_id("reorder")
        order = await get_order(self.store, order_id, customer_id)
        restaurant = await self._restaurant(order.restaurant_id)

        cart = reorder(order, restaurant)

        logger.info("order_reordered", order_id=order_id, lines=len(cart))

        return cart

    # ========================================================================
    # SHUTDOWN
    # ========================================================================

    @property
    def active_watches(self) -> List[OrderWatch]:
        return [w for w in self._watches if not w.is_closed]

    async def close(self):
        """Stop every watch opened through this service."""
        watches, self._watches = self._watches, []

        for watch in watches:
            await watch.unsubscribe()

        logger.info("ordering_service_closed", watches=len(watches))


def create_service(config: Optional[Config] = None) -> OrderingService:
    """
    Build the production service from environment configuration.

    Raises:
        ConfigurationError: Missing or invalid settings
    """
    config = config or get_config()

    configure_logging(config.logging.log_level, config.logging.json_logs)
    validate_configuration(config)

    store = SupabaseStore(config.supabase)
    sessions = SupabaseSessionProvider(store.client)

    logger.info("ordering_service_created", **config.get_safe_summary())

    return OrderingService(store, sessions, config.ordering)
