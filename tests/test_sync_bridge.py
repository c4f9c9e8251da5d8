import json

import fakeredis
import pytest
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient

from conftest import CUSTOMER_ID, STAFF_ID, auth_header, make_settings, order_payload, seed

from app import auth
from app.catalog import CatalogStore
from app.db import build_engine, build_session_factory, init_db
from app.errors import AuthenticationError, AuthorizationError, DependencyError
from app.main import create_app
from app.schemas import CreateOrderRequest
from app.snapshot import ORDERS_KEY, SYNC_MESSAGE_TYPE, TIMESTAMP_KEY, OrderSnapshot
from app.sync_bridge import OrderSyncBridge


async def principal_for(app, user_id):
    async with app.state.session_factory() as session:
        return await auth.load_principal(session, user_id)


async def save(app, **overrides):
    customer = await principal_for(app, CUSTOMER_ID)
    req = CreateOrderRequest.model_validate(order_payload(**overrides))
    return await app.state.bridge.save_order(req, customer)


async def test_save_order_updates_snapshot(app, redis):
    order_id = await save(app)

    orders = json.loads(await redis.get(ORDERS_KEY))
    assert [o["id"] for o in orders] == [order_id]
    assert int(await redis.get(TIMESTAMP_KEY)) > 0
    assert [o["id"] for o in await app.state.bridge.get_orders()] == [order_id]


async def test_update_status_reports_outcome(app):
    bridge = app.state.bridge
    staff = await principal_for(app, STAFF_ID)
    order_id = await save(app)

    assert await bridge.update_order_status(order_id, "preparing", staff) is True
    assert await bridge.update_order_status(order_id, "confirmed", staff) is False
    assert await bridge.update_order_status(order_id, "bogus", staff) is False
    assert await bridge.update_order_status("missing", "preparing", staff) is False

    [order] = await bridge.get_orders()
    assert order["status"] == "preparing"


async def test_update_status_requires_staff(app):
    customer = await principal_for(app, CUSTOMER_ID)
    order_id = await save(app)
    with pytest.raises(AuthorizationError):
        await app.state.bridge.update_order_status(order_id, "preparing", customer)


async def test_get_orders_rebuilds_missing_snapshot(app, redis):
    order_id = await save(app)
    await redis.delete(ORDERS_KEY, TIMESTAMP_KEY)

    orders = await app.state.bridge.get_orders()

    assert [o["id"] for o in orders] == [order_id]
    assert await redis.get(ORDERS_KEY) is not None


async def test_get_orders_ignores_corrupt_snapshot(app, redis):
    order_id = await save(app)
    await redis.set(ORDERS_KEY, "{broken")

    assert [o["id"] for o in await app.state.bridge.get_orders()] == [order_id]


async def test_save_order_propagates_store_failure(app, tmp_path):
    # テーブルの無い DB を指すブリッジ
    empty_dir = tmp_path / "empty"
    empty_dir.mkdir()
    settings = make_settings(empty_dir)
    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    bridge = OrderSyncBridge(
        session_factory, CatalogStore(session_factory), app.state.snapshot, settings
    )
    customer = await principal_for(app, CUSTOMER_ID)
    req = CreateOrderRequest.model_validate(order_payload())

    with pytest.raises(DependencyError):
        await bridge.save_order(req, customer)
    await engine.dispose()


async def test_poll_notifies_subscribers_once_per_change(app):
    bridge = app.state.bridge
    received = []
    unsubscribe = bridge.subscribe(received.append)

    order_id = await save(app)
    assert await bridge.poll_once() is True
    assert await bridge.poll_once() is False
    assert [o["id"] for o in received[0]] == [order_id]

    unsubscribe()
    await save(app)
    assert await bridge.poll_once() is True
    assert len(received) == 1


async def test_listener_failures_are_isolated(app):
    bridge = app.state.bridge
    seen = []

    def broken(orders):
        raise RuntimeError("listener bug")

    async def healthy(orders):
        seen.append(len(orders))

    bridge.subscribe(broken)
    bridge.subscribe(healthy)
    await save(app)
    await bridge.poll_once()

    assert seen == [1]


async def test_sync_message_triggers_refresh(app):
    bridge = app.state.bridge
    received = []
    bridge.subscribe(received.append)
    await save(app)
    ts = await app.state.snapshot.read_timestamp()

    await bridge._on_sync_message("not json")
    await bridge._on_sync_message(json.dumps({"type": "OTHER", "timestamp": ts}))
    assert received == []

    await bridge._on_sync_message(json.dumps({"type": SYNC_MESSAGE_TYPE, "timestamp": ts}))
    assert len(received) == 1
    assert bridge.last_seen == ts


async def test_snapshot_write_failure_is_not_fatal():
    server = fakeredis.FakeServer()
    server.connected = False
    snapshot = OrderSnapshot(fake_aioredis.FakeRedis(server=server))

    assert await snapshot.write([{"id": "o-1"}]) is None


async def test_snapshot_timestamps_increase():
    snapshot = OrderSnapshot(fake_aioredis.FakeRedis(decode_responses=True))
    first = await snapshot.write([])
    second = await snapshot.write([])
    assert second > first
    assert await snapshot.read_timestamp() == second


async def test_poll_rebuilds_corrupt_snapshot_from_store(app, redis):
    bridge = app.state.bridge
    received = []
    bridge.subscribe(received.append)
    order_id = await save(app)
    await redis.set(ORDERS_KEY, "{broken")

    assert await bridge.poll_once() is True
    assert [[o["id"] for o in orders] for orders in received] == [[order_id]]
    assert [o["id"] for o in json.loads(await redis.get(ORDERS_KEY))] == [order_id]
    assert await bridge.poll_once() is False


async def test_sync_endpoint_falls_back_to_store_without_redis(tmp_path):
    server = fakeredis.FakeServer()
    application = create_app(make_settings(tmp_path), redis=fake_aioredis.FakeRedis(server=server))
    await init_db(application.state.engine)
    await seed(application.state.session_factory)
    server.connected = False

    async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as client:
        placed = await client.post("/orders", json=order_payload(), headers=auth_header(CUSTOMER_ID))
        resp = await client.get("/sync/orders", params={"since": 0}, headers=auth_header(STAFF_ID))

    assert placed.status_code == 201
    assert resp.status_code == 200
    snapshot = resp.json()
    assert snapshot["changed"] is True
    assert [o["id"] for o in snapshot["orders"]] == [placed.json()["orderId"]]
    await application.state.engine.dispose()


async def test_save_order_for_vanished_user_is_rejected(app):
    ghost = auth.Principal(user_id="user-deleted", email="ghost@example.com", role="customer")
    req = CreateOrderRequest.model_validate(order_payload())

    with pytest.raises(AuthenticationError):
        await app.state.bridge.save_order(req, ghost)

    assert await app.state.bridge.get_orders() == []
