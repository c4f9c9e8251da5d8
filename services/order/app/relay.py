"""
Order Service — Redis Pub/Sub リレー

複数ワーカーで動かす場合、各プロセスの TopicHub は自分に繋がった
クライアントしか知らない。そこで publish を一旦 Redis の order_events
チャネルに流し、全プロセスのサブスクライバーが自分のハブへ配信する。

  OrderEventPublisher ──▶ RedisRelay.publish ──▶ Redis "order_events"
                                                   │
                          run_subscriber ◀─────────┘ ──▶ TopicHub.publish

注意: Redis Pub/Sub は fire-and-forget 方式。
購読していないプロセスへのイベントは失われる (チャネル自体が at-most-once)。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from .realtime import TopicHub

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


class RedisRelay:
    """TopicHub と同じ publish / broadcast インターフェースを持つ。"""

    def __init__(self, redis: aioredis.Redis, channel: str = CHANNEL) -> None:
        self._redis = redis
        self._channel = channel
        self._pending: set[asyncio.Task] = set()

    def publish(self, topic: str, event: str, payload) -> None:
        self._schedule({"topic": topic, "event": event, "data": payload})

    def broadcast(self, event: str, payload) -> None:
        self._schedule({"topic": None, "event": event, "data": payload})

    def _schedule(self, message: dict) -> None:
        task = asyncio.create_task(self._send(message))
        self._pending.add(task)
        task.add_done_callback(self._done)

    async def _send(self, message: dict) -> None:
        await self._redis.publish(self._channel, json.dumps(message, default=str))

    def _done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Relay publish failed: %s", exc)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


def deliver(hub: TopicHub, message: dict) -> int:
    """リレーされたメッセージをローカルのハブへ配信する。"""
    event = message.get("event")
    if not event:
        return 0
    topic = message.get("topic")
    if topic is None:
        return hub.broadcast(event, message.get("data"))
    return hub.publish(topic, event, message.get("data"))


async def run_subscriber(
    redis: aioredis.Redis,
    hub: TopicHub,
    shutdown_event: asyncio.Event,
    channel: str = CHANNEL,
) -> None:
    """
    order_events チャネルを購読し、受信したイベントをハブへ配信する。
    shutdown_event がセットされるまでループで待機する。
    """
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    logger.info("Subscribed to %s channel", channel)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    deliver(hub, json.loads(message["data"]))
                except (ValueError, TypeError):
                    logger.exception("Failed to relay event")
            else:
                await asyncio.sleep(0.05)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
