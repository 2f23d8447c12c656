"""
Database Module (Production)
=============================
Supabase implementation of the order record store.

- PostgREST reads/writes through the sync client, run in the executor
- Reads carry a timeout and go through a circuit breaker
- Writes are awaited and never retried here: a header insert that timed
  out may still have landed, so repeating it could duplicate the order
- Realtime (postgres_changes) through the async client
"""

import asyncio
import logging
from typing import Dict, List, Any, Optional
from datetime import datetime
from enum import Enum

from supabase import create_client, acreate_client, Client, AsyncClient
from postgrest.exceptions import APIError

from config import SupabaseConfig
from errors import StoreError, RealtimeTransportError
from store import ChangeCallback, OrderChannel, OrderStore, Row, StatusCallback


logger = logging.getLogger(__name__)


# Configuration
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds

ORDER_DETAIL_SELECT = (
    "*, "
    "restaurants(id, name, phone, address, image_url), "
    "order_items(*, menu_items(name, description))"
)

RESTAURANT_SELECT = "id, name, phone, delivery_fee, minimum_order"


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for read operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = datetime.utcnow()

        if self.failure_count >= self.threshold and self.state != CircuitState.OPEN:
            self.state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            # Check if timeout expired
            if self.last_failure_time:
                elapsed = (datetime.utcnow() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        """Get current state."""
        return self.state.value


# ============================================================================
# REALTIME CHANNEL
# ============================================================================

def extract_changed_columns(payload: Any) -> Row:
    """
    Pull the changed-column record out of a postgres_changes payload.

    realtime-py nests it under data.record; the JS-style shape uses "new".
    """
    if not isinstance(payload, dict):
        return {}

    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("record"), dict):
        return data["record"]

    for key in ("new", "record"):
        if isinstance(payload.get(key), dict):
            return payload[key]

    return {}


class SupabaseOrderChannel(OrderChannel):
    """Realtime channel bound to one order id."""

    def __init__(self, client: AsyncClient, channel: Any, order_id: str):
        self._client = client
        self._channel = channel
        self.order_id = order_id
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        try:
            await self._client.remove_channel(self._channel)
            logger.info(f"Realtime channel closed for order {self.order_id}")
        except Exception as e:
            raise RealtimeTransportError(
                f"Failed to close channel for order {self.order_id}: {e}"
            ) from e


# ============================================================================
# SUPABASE STORE
# ============================================================================

class SupabaseStore(OrderStore):
    """
    Order record store backed by Supabase.
    """

    def __init__(self, settings: SupabaseConfig, client: Optional[Client] = None):
        self.settings = settings
        self.client: Client = client or create_client(settings.url, settings.key)
        self._realtime_client: Optional[AsyncClient] = None
        self._realtime_lock = asyncio.Lock()
        self.circuit_breaker = CircuitBreaker()

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

        logger.info("Supabase store initialized")

    @classmethod
    def from_config(cls) -> "SupabaseStore":
        return cls(SupabaseConfig())

    # ========================================================================
    # EXECUTION HELPERS
    # ========================================================================

    async def _read(self, description: str, query) -> List[Row]:
        """
        Run a read with timeout and circuit breaker.

        Raises:
            StoreError: Circuit open, timeout or API error
        """
        if not self.circuit_breaker.can_execute():
            logger.warning(f"Circuit breaker open, skipping read: {description}")
            raise StoreError(f"Store unavailable (circuit open): {description}")

        try:
            loop = asyncio.get_running_loop()

            result = await asyncio.wait_for(
                loop.run_in_executor(None, query.execute),
                timeout=self.settings.read_timeout
            )

            self.read_count += 1
            self.circuit_breaker.record_success()

            return result.data or []

        except asyncio.TimeoutError as e:
            logger.error(f"Read timeout: {description}")
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise StoreError(f"Timed out reading {description}") from e

        except APIError as e:
            logger.error(f"Read error ({description}): {e.message}")
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise StoreError(f"Failed reading {description}: {e.message}") from e

        except Exception as e:
            logger.error(f"Read error ({description}): {str(e)}")
            self.error_count += 1
            self.circuit_breaker.record_failure()
            raise StoreError(f"Failed reading {description}: {e}") from e

    async def _write(self, description: str, query) -> List[Row]:
        """
        Run a write once.

        Raises:
            StoreError: API or transport error
        """
        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, query.execute)
            self.write_count += 1
            return result.data or []

        except APIError as e:
            logger.error(f"Write error ({description}): {e.message}")
            self.error_count += 1
            raise StoreError(f"Failed writing {description}: {e.message}") from e

        except Exception as e:
            # httpx transport errors and the like
            logger.error(f"Write error ({description}): {str(e)}")
            self.error_count += 1
            raise StoreError(f"Failed writing {description}: {e}") from e

    # ========================================================================
    # READ OPERATIONS
    # ========================================================================

    async def fetch_restaurant(self, restaurant_id: str) -> Optional[Row]:
        rows = await self._read(
            f"restaurant {restaurant_id}",
            self.client.table("restaurants")
                .select(RESTAURANT_SELECT)
                .eq("id", restaurant_id)
                .limit(1)
        )
        return rows[0] if rows else None

    async def fetch_order(self, order_id: str, customer_id: str) -> Optional[Row]:
        rows = await self._read(
            f"order {order_id}",
            self.client.table("orders")
                .select(ORDER_DETAIL_SELECT)
                .eq("id", order_id)
                .eq("customer_id", customer_id)
                .limit(1)
        )
        return rows[0] if rows else None

    async def list_orders(self, customer_id: str) -> List[Row]:
        return await self._read(
            f"orders for customer {customer_id}",
            self.client.table("orders")
                .select(ORDER_DETAIL_SELECT)
                .eq("customer_id", customer_id)
                .order("created_at", desc=True)
        )

    # ========================================================================
    # WRITE OPERATIONS
    # ========================================================================

    async def insert_order(self, row: Row) -> Row:
        rows = await self._write(
            "order header",
            self.client.table("orders").insert(row)
        )
        if not rows:
            raise StoreError("Order insert returned no row")
        return rows[0]

    async def insert_order_items(self, rows: List[Row]) -> List[Row]:
        # One request, one INSERT statement: all rows land or none do
        return await self._write(
            f"{len(rows)} order items",
            self.client.table("order_items").insert(rows)
        )

    # ========================================================================
    # REALTIME
    # ========================================================================

    async def _get_realtime_client(self) -> AsyncClient:
        async with self._realtime_lock:
            if self._realtime_client is None:
                self._realtime_client = await acreate_client(
                    self.settings.url,
                    self.settings.key
                )
                logger.info("Supabase realtime client initialized")
            return self._realtime_client

    async def subscribe_order_updates(
        self,
        order_id: str,
        on_change: ChangeCallback,
        on_status: Optional[StatusCallback] = None
    ) -> OrderChannel:
        def _on_postgres_change(payload: Any):
            on_change(extract_changed_columns(payload))

        def _on_subscribe(status: Any, error: Optional[Exception] = None):
            status_name = str(getattr(status, "value", status))
            logger.debug(f"Realtime channel for order {order_id}: {status_name}")
            if on_status:
                on_status(status_name, error)

        try:
            client = await self._get_realtime_client()
            channel = client.channel(f"order-updates-{order_id}")
            channel.on_postgres_changes(
                "UPDATE",
                schema=self.settings.schema,
                table="orders",
                filter=f"id=eq.{order_id}",
                callback=_on_postgres_change
            )
            await channel.subscribe(_on_subscribe)
        except Exception as e:
            logger.error(f"Realtime subscribe failed for order {order_id}: {str(e)}")
            raise RealtimeTransportError(
                f"Could not subscribe to order {order_id}: {e}"
            ) from e

        logger.info(f"Realtime channel opened for order {order_id}")

        return SupabaseOrderChannel(client, channel, order_id)

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_healthy(self) -> bool:
        """Check if store is healthy."""
        return self.circuit_breaker.state != CircuitState.OPEN
