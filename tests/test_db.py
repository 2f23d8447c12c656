import asyncio
from types import SimpleNamespace

import pytest
from postgrest.exceptions import APIError
from prometheus_client import REGISTRY

import db
from db import (
    CircuitBreaker,
    CircuitState,
    SupabaseStore,
    extract_changed_columns,
)
from errors import RealtimeTransportError, StoreError
from tracking import OrderTracker


class FakeQuery:
    """Chainable stand-in for a PostgREST request builder."""

    def __init__(self, table, result=None, error=None):
        self.table = table
        self.calls = []
        self.result = result or []
        self.error = error

    def __getattr__(self, name):
        def chain(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return chain

    def execute(self):
        if self.error:
            raise self.error
        return SimpleNamespace(data=self.result)


class FakeClient:
    def __init__(self, **tables):
        self.tables = tables

    def table(self, name):
        return self.tables[name]


@pytest.fixture
def settings():
    return SimpleNamespace(url="https://example.supabase.co", key="anon", schema="public", read_timeout=5)


def test_extract_changed_columns_shapes():
    record = {"status": "ready"}

    assert extract_changed_columns({"data": {"record": record}}) == record
    assert extract_changed_columns({"new": record}) == record
    assert extract_changed_columns({"record": record}) == record
    assert extract_changed_columns({"data": {}}) == {}
    assert extract_changed_columns(None) == {}


def test_fetch_order_is_scoped_to_customer(settings):
    query = FakeQuery("orders", result=[{"id": "X"}])
    store = SupabaseStore(settings, client=FakeClient(orders=query))

    row = asyncio.run(store.fetch_order("X", "cust-1"))

    assert row == {"id": "X"}
    assert ("eq", ("id", "X"), {}) in query.calls
    assert ("eq", ("customer_id", "cust-1"), {}) in query.calls
    assert store.get_stats()["reads"] == 1


def test_fetch_order_missing_returns_none(settings):
    store = SupabaseStore(settings, client=FakeClient(orders=FakeQuery("orders")))

    assert asyncio.run(store.fetch_order("X", "cust-1")) is None


def test_list_orders_newest_first(settings):
    query = FakeQuery("orders", result=[{"id": "B"}, {"id": "A"}])
    store = SupabaseStore(settings, client=FakeClient(orders=query))

    asyncio.run(store.list_orders("cust-1"))

    assert ("order", ("created_at",), {"desc": True}) in query.calls


def test_read_api_error_becomes_store_error(settings):
    error = APIError({"message": "permission denied", "code": "42501"})
    store = SupabaseStore(settings, client=FakeClient(restaurants=FakeQuery("restaurants", error=error)))

    with pytest.raises(StoreError, match="permission denied"):
        asyncio.run(store.fetch_restaurant("rest-1"))

    assert store.get_stats()["errors"] == 1


def test_insert_order_returns_persisted_row(settings):
    query = FakeQuery("orders", result=[{"id": "X", "order_number": "ORD-1"}])
    store = SupabaseStore(settings, client=FakeClient(orders=query))

    row = asyncio.run(store.insert_order({"order_number": "ORD-1"}))

    assert row["id"] == "X"
    assert query.calls[0][0] == "insert"


def test_insert_order_with_no_row_fails(settings):
    store = SupabaseStore(settings, client=FakeClient(orders=FakeQuery("orders")))

    with pytest.raises(StoreError):
        asyncio.run(store.insert_order({"order_number": "ORD-1"}))


def test_write_error_is_not_retried(settings):
    query = FakeQuery("order_items", error=ConnectionError("reset"))
    store = SupabaseStore(settings, client=FakeClient(order_items=query))

    with pytest.raises(StoreError):
        asyncio.run(store.insert_order_items([{"order_id": "X"}]))

    assert [call[0] for call in query.calls] == ["insert"]


def test_circuit_breaker_opens_after_threshold():
    breaker = CircuitBreaker(threshold=2, timeout=60)

    breaker.record_failure()
    assert breaker.can_execute()

    breaker.record_failure()
    assert breaker.state is CircuitState.OPEN
    assert not breaker.can_execute()


def test_open_circuit_rejects_reads(settings):
    store = SupabaseStore(settings, client=FakeClient(orders=FakeQuery("orders")))
    for _ in range(store.circuit_breaker.threshold):
        store.circuit_breaker.record_failure()

    with pytest.raises(StoreError, match="circuit open"):
        asyncio.run(store.fetch_order("X", "cust-1"))

    assert not store.is_healthy()


# ============================================================================
# REALTIME
# ============================================================================

class FakeRealtimeChannel:
    def __init__(self, name, subscribe_error=None):
        self.name = name
        self.subscribe_error = subscribe_error
        self.bindings = []

    def on_postgres_changes(self, event, schema=None, table=None, filter=None, callback=None):
        self.bindings.append(
            {"event": event, "schema": schema, "table": table, "filter": filter, "callback": callback}
        )
        return self

    async def subscribe(self, callback=None):
        if self.subscribe_error:
            raise self.subscribe_error
        callback("SUBSCRIBED", None)
        return self


class FakeAsyncClient:
    def __init__(self, subscribe_error=None, remove_error=None):
        self.subscribe_error = subscribe_error
        self.remove_error = remove_error
        self.channels = []
        self.removed = []

    def channel(self, name):
        channel = FakeRealtimeChannel(name, self.subscribe_error)
        self.channels.append(channel)
        return channel

    async def remove_channel(self, channel):
        if self.remove_error:
            raise self.remove_error
        self.removed.append(channel)


@pytest.fixture
def realtime(monkeypatch):
    """Replaces acreate_client; returns the holder to configure the fake."""
    holder = SimpleNamespace(client=FakeAsyncClient(), error=None, created=0)

    async def fake_acreate_client(url, key):
        holder.created += 1
        if holder.error:
            raise holder.error
        return holder.client

    monkeypatch.setattr(db, "acreate_client", fake_acreate_client)
    return holder


def test_subscribe_binds_update_filter_and_forwards_changes(settings, realtime):
    store = SupabaseStore(settings, client=FakeClient())
    changes, statuses = [], []

    channel = asyncio.run(store.subscribe_order_updates(
        "X", changes.append, lambda status, error: statuses.append(status)
    ))

    binding = realtime.client.channels[0].bindings[0]
    assert binding["event"] == "UPDATE"
    assert binding["schema"] == "public"
    assert binding["table"] == "orders"
    assert binding["filter"] == "id=eq.X"
    assert statuses == ["SUBSCRIBED"]

    binding["callback"]({"data": {"record": {"status": "ready"}}})
    assert changes == [{"status": "ready"}]

    asyncio.run(channel.close())
    asyncio.run(channel.close())
    assert realtime.client.removed == [realtime.client.channels[0]]


def test_realtime_client_is_created_once(settings, realtime):
    store = SupabaseStore(settings, client=FakeClient())

    async def subscribe_twice():
        await store.subscribe_order_updates("X", lambda changes: None)
        await store.subscribe_order_updates("Y", lambda changes: None)

    asyncio.run(subscribe_twice())

    assert realtime.created == 1
    assert len(realtime.client.channels) == 2


def test_realtime_client_failure_is_transport_error(settings, realtime):
    realtime.error = ConnectionError("websocket handshake failed")
    store = SupabaseStore(settings, client=FakeClient())

    with pytest.raises(RealtimeTransportError, match="handshake"):
        asyncio.run(store.subscribe_order_updates("X", lambda changes: None))


def test_channel_subscribe_failure_is_transport_error(settings, realtime):
    realtime.client = FakeAsyncClient(subscribe_error=TimeoutError("no ack"))
    store = SupabaseStore(settings, client=FakeClient())

    with pytest.raises(RealtimeTransportError):
        asyncio.run(store.subscribe_order_updates("X", lambda changes: None))


def test_channel_close_failure_is_transport_error(settings, realtime):
    realtime.client = FakeAsyncClient(remove_error=ConnectionError("gone"))
    store = SupabaseStore(settings, client=FakeClient())
    channel = asyncio.run(store.subscribe_order_updates("X", lambda changes: None))

    with pytest.raises(RealtimeTransportError):
        asyncio.run(channel.close())


def test_watch_survives_realtime_client_failure(settings, realtime):
    realtime.error = ConnectionError("websocket handshake failed")
    orders = FakeQuery("orders", result=[{"id": "X", "customer_id": "cust-1", "status": "pending"}])
    store = SupabaseStore(settings, client=FakeClient(orders=orders))
    updates, errors = [], []
    active_before = REGISTRY.get_sample_value("active_order_watches")

    watch = asyncio.run(
        OrderTracker(store).watch("X", "cust-1", updates.append, errors.append)
    )

    assert watch.stale
    assert [u["status"] for u in updates] == ["pending"]
    assert isinstance(errors[0], RealtimeTransportError)
    assert REGISTRY.get_sample_value("active_order_watches") == active_before + 1

    asyncio.run(watch.unsubscribe())
    assert REGISTRY.get_sample_value("active_order_watches") == active_before
