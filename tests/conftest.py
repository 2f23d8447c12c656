"""Shared fixtures: an in-memory order store and session provider."""

from copy import deepcopy
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from cart import Cart, MenuItem, Restaurant
from session import SessionProvider
from store import OrderChannel, OrderStore


RESTAURANT_ID = "rest-1"
CUSTOMER_ID = "cust-1"


class FakeChannel(OrderChannel):
    """Push channel driven by the test."""

    def __init__(self, order_id, on_change, on_status):
        self.order_id = order_id
        self.on_change = on_change
        self.on_status = on_status
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def push(self, changes: Dict):
        # Delivered even after close, like an event already in flight
        self.on_change(changes)

    def emit_status(self, status: str, error: Optional[Exception] = None):
        if self.on_status:
            self.on_status(status, error)

    async def close(self):
        self.close_calls += 1


class FakeStore(OrderStore):
    """
    In-memory OrderStore.

    Failure injection:
        header_errors / item_errors / fetch_errors: exceptions raised (and
        consumed) one per call, in order
        subscribe_error: raised by every subscribe call
    """

    def __init__(self):
        self.restaurants: Dict[str, Dict] = {}
        self.menu_names: Dict[str, str] = {}
        self.orders: Dict[str, Dict] = {}
        self.items: List[Dict] = []
        self.channels: List[FakeChannel] = []

        self.header_errors: List[Exception] = []
        self.item_errors: List[Exception] = []
        self.fetch_errors: List[Exception] = []
        self.subscribe_error: Optional[Exception] = None

        # Ids / order numbers the "server" assigns to the next inserted headers
        self.forced_ids: List[str] = []
        self.server_order_numbers: List[str] = []

        self.header_inserts = 0
        self.item_insert_calls = 0
        self.fetch_calls = 0
        self._next_id = 1

    # Seeding

    def add_restaurant(self, row: Dict):
        self.restaurants[str(row["id"])] = dict(row)

    def add_order(self, row: Dict, items: Optional[List[Dict]] = None) -> Dict:
        row = dict(row)
        row.setdefault("created_at", self._timestamp())
        self.orders[str(row["id"])] = row
        for item in items or []:
            self.items.append(dict(item, order_id=row["id"]))
        return row

    def _timestamp(self) -> str:
        stamp = f"2026-01-01T00:00:{self._next_id:02d}+00:00"
        self._next_id += 1
        return stamp

    def _detail(self, row: Dict) -> Dict:
        detail = deepcopy(row)
        restaurant = self.restaurants.get(str(row.get("restaurant_id")), {})
        detail["restaurants"] = {
            "id": restaurant.get("id"),
            "name": restaurant.get("name"),
            "phone": restaurant.get("phone"),
        }
        detail["order_items"] = [
            dict(
                deepcopy(item),
                menu_items={"name": self.menu_names.get(item["menu_item_id"])},
            )
            for item in self.items
            if item["order_id"] == row["id"]
        ]
        return detail

    # OrderStore

    async def fetch_restaurant(self, restaurant_id):
        row = self.restaurants.get(str(restaurant_id))
        return deepcopy(row) if row else None

    async def fetch_order(self, order_id, customer_id):
        self.fetch_calls += 1
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)

        row = self.orders.get(str(order_id))
        if not row or row.get("customer_id") != customer_id:
            return None
        return self._detail(row)

    async def list_orders(self, customer_id):
        rows = [row for row in self.orders.values() if row.get("customer_id") == customer_id]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return [self._detail(row) for row in rows]

    async def insert_order(self, row):
        self.header_inserts += 1
        if self.header_errors:
            raise self.header_errors.pop(0)

        order_id = self.forced_ids.pop(0) if self.forced_ids else f"order-{self._next_id}"
        persisted = dict(deepcopy(row), id=order_id)
        if self.server_order_numbers:
            persisted["order_number"] = self.server_order_numbers.pop(0)
        return deepcopy(self.add_order(persisted))

    async def insert_order_items(self, rows):
        self.item_insert_calls += 1
        if self.item_errors:
            raise self.item_errors.pop(0)

        inserted = []
        for row in rows:
            item = dict(deepcopy(row), id=f"item-{self._next_id}")
            self._next_id += 1
            self.items.append(item)
            inserted.append(deepcopy(item))
        return inserted

    async def subscribe_order_updates(self, order_id, on_change, on_status=None):
        if self.subscribe_error:
            raise self.subscribe_error

        channel = FakeChannel(order_id, on_change, on_status)
        self.channels.append(channel)
        return channel

    # Simulating the fulfillment side

    def update_order(self, order_id: str, changes: Dict):
        """Apply an UPDATE to the stored row and push it to open channels."""
        self.orders[order_id].update(changes)
        for channel in self.channels:
            if channel.order_id == order_id:
                channel.push(dict(changes))


class FakeSessions(SessionProvider):
    def __init__(self, customer_id: Optional[str] = CUSTOMER_ID):
        self.customer_id = customer_id

    async def current_customer_id(self):
        return self.customer_id


@pytest.fixture
def restaurant_row():
    return {
        "id": RESTAURANT_ID,
        "name": "Luigi's Trattoria",
        "phone": "+15550100",
        "delivery_fee": 2.99,
        "minimum_order": 15.00,
    }


@pytest.fixture
def restaurant(restaurant_row):
    return Restaurant.from_row(restaurant_row)


@pytest.fixture
def margherita():
    return MenuItem(id="item-pizza", name="Margherita", price=Decimal("10.00"), restaurant_id=RESTAURANT_ID)


@pytest.fixture
def tiramisu():
    return MenuItem(id="item-tiramisu", name="Tiramisu", price=Decimal("6.50"), restaurant_id=RESTAURANT_ID)


@pytest.fixture
def cart(margherita):
    cart = Cart(RESTAURANT_ID)
    cart.add_item(margherita, 2)
    return cart


@pytest.fixture
def store(restaurant_row, margherita, tiramisu):
    store = FakeStore()
    store.add_restaurant(restaurant_row)
    store.menu_names[margherita.id] = margherita.name
    store.menu_names[tiramisu.id] = tiramisu.name
    return store


@pytest.fixture
def sessions():
    return FakeSessions()


@pytest.fixture
def pending_order(store):
    """A placed order "X" with one line, status pending."""
    return store.add_order(
        {
            "id": "X",
            "order_number": "ORD-1700000000000-ABC123",
            "customer_id": CUSTOMER_ID,
            "restaurant_id": RESTAURANT_ID,
            "status": "pending",
            "payment_status": "pending",
            "payment_method": "card",
            "subtotal": 20.00,
            "tax_amount": 1.60,
            "delivery_fee": 2.99,
            "total_amount": 24.59,
            "delivery_address": {
                "street": "1 Main St",
                "city": "Springfield",
                "state": "IL",
                "zipCode": "62701",
            },
            "delivery_instructions": None,
            "estimated_delivery_time": "2026-01-01T00:45:00+00:00",
            "actual_delivery_time": None,
        },
        items=[
            {
                "id": "line-1",
                "menu_item_id": "item-pizza",
                "quantity": 2,
                "unit_price": 10.00,
                "total_price": 20.00,
                "special_instructions": "extra basil",
            }
        ],
    )

