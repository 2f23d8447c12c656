"""
Realtime Order Tracking (Production)
====================================
Keeps a customer's view of one order current as the store changes.

Flow:
1. Fetch the full order once (restaurant + items), scoped to the customer
2. Deliver it to on_update
3. Subscribe to UPDATE events for that order id
4. Merge each partial event onto the last full snapshot, deliver, repeat

Guarantees:
- Events are applied one at a time in arrival order, never coalesced
- A merge only overwrites the keys the event carries
- After unsubscribe() starts, on_update is never called again; late
  events from the transport are dropped
- A transport drop keeps the snapshot and marks the watch stale.
  Re-fetching after a reconnect gap is the caller's call (refresh())
"""

from copy import deepcopy
from typing import Any, Callable, Dict, Mapping, Optional

import structlog
from prometheus_client import Counter, Gauge

from errors import OrderUnavailableError, RealtimeTransportError, StoreError
from order_status import (
    OrderStatus,
    StatusHistory,
    display,
    is_terminal,
    progress,
)
from store import OrderChannel, OrderStore, Row

logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_updates_applied_total = Counter(
    'order_updates_applied_total',
    'Realtime order updates merged and delivered'
)
order_updates_dropped_total = Counter(
    'order_updates_dropped_total',
    'Realtime order updates ignored after unsubscribe'
)
realtime_transport_errors_total = Counter(
    'realtime_transport_errors_total',
    'Realtime channel errors',
    ['status']
)
active_order_watches = Gauge(
    'active_order_watches',
    'Currently watched orders'
)

UpdateCallback = Callable[[Row], None]
ErrorCallback = Callable[[Exception], None]

_TRANSPORT_FAILURE_STATES = {"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"}


def merge_snapshot(snapshot: Mapping[str, Any], changes: Mapping[str, Any]) -> Row:
    """
    Field-wise merge of a partial change record onto a full snapshot.

    Keys in changes win; every other key keeps the snapshot's value.
    Neither argument is modified.
    """
    merged = dict(snapshot)
    for key, value in changes.items():
        merged[key] = value
    return merged


class OrderWatch:
    """
    Live view of one order. Created by OrderTracker.watch().
    """

    def __init__(
        self,
        store: OrderStore,
        order_id: str,
        customer_id: str,
        on_update: UpdateCallback,
        on_error: Optional[ErrorCallback] = None
    ):
        self.store = store
        self.order_id = order_id
        self.customer_id = customer_id
        self._on_update = on_update
        self._on_error = on_error

        self._snapshot: Optional[Row] = None
        self._channel: Optional[OrderChannel] = None
        self._closed = False
        self._counted = False

        # Set on transport failure, cleared by refresh()
        self.stale = False

        self.history = StatusHistory(order_id)
        self.update_count = 0
        self.dropped_count = 0

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def _start(self):
        """Initial fetch, first delivery, then open the channel."""
        row = await self._fetch()

        self._snapshot = row
        self.history.observe(row.get("status"))
        self._deliver()

        try:
            channel = await self.store.subscribe_order_updates(
                self.order_id,
                self._handle_change,
                self._handle_status
            )
        except (RealtimeTransportError, StoreError) as e:
            self._mark_stale(e, "SUBSCRIBE_FAILED")
            self._count_active()
            return

        if self._closed:
            # unsubscribe() ran while the channel was opening
            await self._close_channel(channel)
            return

        self._channel = channel
        self._count_active()

        logger.info("order_watch_started", order_id=self.order_id)

    async def unsubscribe(self):
        """
        Stop watching. Safe to call more than once.

        No on_update/on_error call happens once this has been entered.
        """
        if self._closed:
            return

        self._closed = True
        if self._counted:
            self._counted = False
            active_order_watches.dec()

        channel, self._channel = self._channel, None
        if channel is not None:
            await self._close_channel(channel)

        logger.info(
            "order_watch_stopped",
            order_id=self.order_id,
            updates=self.update_count,
            dropped=self.dropped_count
        )

    async def refresh(self) -> Optional[Row]:
        """
        Re-fetch the full order and deliver it (e.g. after a reconnect gap).

        Returns:
            The new snapshot, or None if the watch is closed

        Raises:
            OrderUnavailableError: Order can no longer be read
        """
        if self._closed:
            return None

        row = await self._fetch()

        if self._closed:
            return None

        self._snapshot = row
        self.stale = False
        self.history.observe(row.get("status"))
        self._deliver()

        logger.info("order_watch_refreshed", order_id=self.order_id)

        return self.snapshot

    # ========================================================================
    # EVENT HANDLING
    # ========================================================================

    def _handle_change(self, changes: Mapping[str, Any]):
        """Apply one pushed change record (runs in arrival order)."""
        if self._closed:
            self.dropped_count += 1
            order_updates_dropped_total.inc()
            logger.debug("order_update_dropped", order_id=self.order_id)
            return

        if not changes:
            return

        self._snapshot = merge_snapshot(self._snapshot or {}, changes)
        self.update_count += 1
        order_updates_applied_total.inc()

        if "status" in changes:
            self.history.observe(changes.get("status"))

        logger.info(
            "order_update_applied",
            order_id=self.order_id,
            fields=sorted(changes.keys())
        )

        try:
            self._deliver()
        except Exception:
            # The channel outlives a failing consumer callback
            logger.exception("order_update_callback_failed", order_id=self.order_id)

    def _handle_status(self, status: str, error: Optional[Exception] = None):
        if self._closed:
            return

        if status in _TRANSPORT_FAILURE_STATES:
            self._mark_stale(
                RealtimeTransportError(
                    f"Realtime channel for order {self.order_id}: {status}"
                    + (f" ({error})" if error else "")
                ),
                status
            )

    def _mark_stale(self, error: Exception, status: str):
        self.stale = True
        realtime_transport_errors_total.labels(status=status).inc()

        logger.warning(
            "order_watch_stale",
            order_id=self.order_id,
            status=status,
            error=str(error)
        )

        if self._on_error and not self._closed:
            self._on_error(error)

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _count_active(self):
        # Only watches handed back to the caller are counted
        if not self._closed and not self._counted:
            self._counted = True
            active_order_watches.inc()

    async def _fetch(self) -> Row:
        try:
            row = await self.store.fetch_order(self.order_id, self.customer_id)
        except StoreError as e:
            raise OrderUnavailableError(self.order_id, str(e)) from e

        if not row:
            raise OrderUnavailableError(self.order_id)

        return row

    async def _close_channel(self, channel: OrderChannel):
        try:
            await channel.close()
        except (RealtimeTransportError, StoreError) as e:
            realtime_transport_errors_total.labels(status="CLOSE_FAILED").inc()
            logger.warning("order_channel_close_failed", order_id=self.order_id, error=str(e))

    def _deliver(self):
        if self._closed or self._snapshot is None:
            return
        self._on_update(deepcopy(self._snapshot))

    @property
    def snapshot(self) -> Optional[Row]:
        """Copy of the last known full order."""
        return deepcopy(self._snapshot) if self._snapshot is not None else None

    def status_view(self) -> Dict[str, Any]:
        """Display state derived from the current snapshot."""
        raw = (self._snapshot or {}).get("status")
        meta = display(raw)

        return {
            "status": OrderStatus.parse(raw).value,
            "raw_status": raw,
            "label": meta.label,
            "icon": meta.icon,
            "message": meta.message,
            "color": meta.color,
            "progress": progress(raw),
            "is_terminal": is_terminal(raw),
            "stale": self.stale,
        }

    def __repr__(self):
        return (
            f"<OrderWatch order_id={self.order_id} "
            f"closed={self._closed} stale={self.stale}>"
        )


class OrderTracker:
    """Creates order watches against a record store."""

    def __init__(self, store: OrderStore):
        self.store = store

    async def watch(
        self,
        order_id: str,
        customer_id: str,
        on_update: UpdateCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> OrderWatch:
        """
        Start watching an order.

        Returns:
            The watch; call `await watch.unsubscribe()` to stop

        Raises:
            OrderUnavailableError: Initial fetch failed (no subscription opened)
        """
        watch = OrderWatch(self.store, order_id, customer_id, on_update, on_error)

        try:
            await watch._start()
        except OrderUnavailableError as e:
            logger.warning("order_watch_unavailable", order_id=order_id, reason=e.reason)
            raise

        return watch
