"""
Order Service — 共有スナップショット (Cross-Client Sync Bridge のキャッシュ層)

リアルタイムチャネルに繋がれないフロントエンド向けに、全注文のコピーを
Redis に置く。正は常に注文ストア (DB) で、これは派生キャッシュにすぎない。

  pizzacraft_orders   : 注文一覧 (JSON, 新しい順)
  orders_timestamp    : 最終書き込み時刻 (epoch ミリ秒)
  orders_sync         : 変更通知チャネル {"type": "ORDERS_SYNC", "timestamp": ...}

書き込みは 2 つのキーと通知を 1 トランザクションで行う。競合時は
タイムスタンプの新しい方が勝つ (last-write-wins)。
"""

import json
import logging
import time

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import queries

logger = logging.getLogger(__name__)

ORDERS_KEY = "pizzacraft_orders"
TIMESTAMP_KEY = "orders_timestamp"
SYNC_CHANNEL = "orders_sync"
SYNC_MESSAGE_TYPE = "ORDERS_SYNC"


def now_ms() -> int:
    return int(time.time() * 1000)


class OrderSnapshot:
    def __init__(self, redis: aioredis.Redis, limit: int = 200) -> None:
        self._redis = redis
        self._limit = limit
        self._last_written = 0

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis

    def _next_timestamp(self) -> int:
        ts = max(now_ms(), self._last_written + 1)
        self._last_written = ts
        return ts

    async def refresh(self, session: AsyncSession) -> int | None:
        """
        注文ストアから最新の一覧を読み直してスナップショットを書き換える。
        失敗してもログに残すだけ (キャッシュなので注文操作は失敗させない)。
        """
        try:
            orders = await queries.list_orders(session, limit=self._limit)
        except SQLAlchemyError:
            logger.exception("Snapshot refresh: could not read orders")
            return None
        return await self.write([queries.serialize_order(o) for o in orders])

    async def write(self, orders: list[dict]) -> int | None:
        ts = self._next_timestamp()
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(ORDERS_KEY, json.dumps(orders, default=str))
                pipe.set(TIMESTAMP_KEY, ts)
                pipe.publish(
                    SYNC_CHANNEL,
                    json.dumps({"type": SYNC_MESSAGE_TYPE, "timestamp": ts}),
                )
                await pipe.execute()
        except RedisError as e:
            logger.warning("Snapshot write failed: %s", e)
            return None
        logger.debug("Snapshot written: %d orders at %d", len(orders), ts)
        return ts

    async def read_timestamp(self) -> int:
        value = await self._redis.get(TIMESTAMP_KEY)
        try:
            return int(value) if value is not None else 0
        except (TypeError, ValueError):
            return 0

    async def read_orders(self) -> list[dict] | None:
        """スナップショットが無ければ None。"""
        raw = await self._redis.get(ORDERS_KEY)
        if raw is None:
            return None
        try:
            orders = json.loads(raw)
        except ValueError:
            logger.warning("Snapshot is not valid JSON; ignoring")
            return None
        return orders if isinstance(orders, list) else None
