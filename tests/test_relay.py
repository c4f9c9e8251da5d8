import asyncio

from fakeredis import aioredis as fake_aioredis

from app.realtime import TopicHub
from app.relay import CHANNEL, RedisRelay, deliver, run_subscriber


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)


async def test_deliver_routes_topic_and_broadcast_messages():
    hub = TopicHub()
    tracked, idle = RecordingSocket(), RecordingSocket()
    conn = hub.open(tracked)
    other = hub.open(idle)
    hub.subscribe(conn, "order-o-1")

    assert deliver(hub, {"topic": "order-o-1", "event": "order-updated", "data": {"order": {}}}) == 1
    assert deliver(hub, {"topic": None, "event": "menu-updated", "data": {"action": "created"}}) == 2
    assert deliver(hub, {"topic": "order-o-1"}) == 0
    await conn.flush()
    await other.flush()

    assert [m["event"] for m in tracked.sent] == ["order-updated", "menu-updated"]
    assert [m["event"] for m in idle.sent] == ["menu-updated"]
    await hub.close_all()


async def test_relay_round_trip_through_redis():
    redis = fake_aioredis.FakeRedis(decode_responses=True)
    hub = TopicHub()
    sock = RecordingSocket()
    conn = hub.open(sock)
    hub.subscribe(conn, "kitchen")

    shutdown = asyncio.Event()
    task = asyncio.create_task(run_subscriber(redis, hub, shutdown))
    for _ in range(100):
        if (await redis.pubsub_numsub(CHANNEL))[0][1]:
            break
        await asyncio.sleep(0.01)

    relay = RedisRelay(redis)
    relay.publish("kitchen", "new-order", {"order": {"id": "o-1"}})
    await relay.drain()

    for _ in range(200):
        if sock.sent:
            break
        await asyncio.sleep(0.01)

    shutdown.set()
    await asyncio.wait_for(task, timeout=5)
    await hub.close_all()

    assert sock.sent == [{"event": "new-order", "topic": "kitchen", "data": {"order": {"id": "o-1"}}}]
