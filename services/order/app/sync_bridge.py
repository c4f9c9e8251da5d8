"""
Order Service — Cross-Client Sync Bridge

顧客サイトと管理ダッシュボードが別々にホストされ、リアルタイムチャネルを
共有できないときのための二次的な同期経路。

  書き込み: 注文ストア (正) ──▶ 共有スナップショット (派生キャッシュ) ──▶ orders_sync 通知
  読み取り: ポーリング (SYNC_POLL_INTERVAL ごとにタイムスタンプを比較)
            と orders_sync 通知 (高速パス) が競争し、新しい方で購読者へ通知

鮮度の上限はポーリング間隔。書き込みは必ず注文ストアが先で、そこが失敗したら
成功を装わずに例外をそのまま返す。
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Callable

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .aggregate import TransitionPolicy
from .auth import require_staff
from .catalog import CatalogStore
from .config import Settings
from .errors import NotFoundError, ValidationError
from .schemas import CreateOrderRequest
from .snapshot import SYNC_CHANNEL, SYNC_MESSAGE_TYPE, OrderSnapshot

logger = logging.getLogger(__name__)

Listener = Callable[[list[dict]], Any]


class OrderSyncBridge:
    def __init__(
        self,
        session_factory: sessionmaker,
        catalog: CatalogStore,
        snapshot: OrderSnapshot,
        settings: Settings,
        effects: commands.OrderEffects | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._snapshot = snapshot
        self._settings = settings
        self._effects = effects or commands.OrderEffects(snapshot=snapshot)
        self._policy = TransitionPolicy(allow_backward=settings.allow_backward_transitions)
        self._listeners: list[Listener] = []
        self._last_seen = 0
        self._lock = asyncio.Lock()

    @property
    def last_seen(self) -> int:
        return self._last_seen

    # ── 書き込み (正は注文ストア) ─────────────────

    async def save_order(self, req: CreateOrderRequest, principal) -> str:
        """注文を保存して ID を返す。ストアの失敗は例外として伝播する。"""
        async with self._session_factory() as session:
            order = await commands.create_order(
                session, self._catalog, req, principal, self._settings, self._effects
            )
        return order.id

    async def update_order_status(self, order_id: str, status: str, principal) -> bool:
        """遷移が拒否された・注文が無い場合は False。永続化の失敗は例外。"""
        require_staff(principal)
        async with self._session_factory() as session:
            try:
                await commands.update_order_status(
                    session, order_id, status, self._policy, self._effects
                )
            except (ValidationError, NotFoundError) as e:
                logger.info("Sync bridge status update rejected: %s (%s)", e.message, e.code)
                return False
        return True

    # ── 読み取り ─────────────────────────────────

    async def get_orders(self) -> list[dict]:
        """スナップショットから返す。無い・読めない場合は注文ストアから作り直す。"""
        try:
            orders = await self._snapshot.read_orders()
        except RedisError as e:
            logger.warning("Snapshot read failed, falling back to store: %s", e)
            orders = None
        if orders is not None:
            return orders
        fresh, _ = await self._rebuild_snapshot()
        return fresh

    async def _rebuild_snapshot(self) -> tuple[list[dict], int | None]:
        """注文ストアから一覧を作り直してスナップショットに書く。"""
        async with self._session_factory() as session:
            rows = await queries.list_orders(session, limit=self._settings.sync_snapshot_limit)
            fresh = [queries.serialize_order(o) for o in rows]
        return fresh, await self._snapshot.write(fresh)

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """変更時に注文一覧を受け取るコールバックを登録する。戻り値で解除。"""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def _notify(self, orders: list[dict]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(orders)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Sync listener failed")

    # ── ポーリングと高速パス ──────────────────────

    async def poll_once(self) -> bool:
        """スナップショットが前回より新しければ取り直して通知する。"""
        async with self._lock:
            ts = await self._snapshot.read_timestamp()
            if ts <= self._last_seen:
                return False
            orders = await self._snapshot.read_orders()
            if orders is None:
                # 壊れた・消えたスナップショットは空一覧として配らない
                logger.warning("Snapshot unreadable at %d, rebuilding from store", ts)
                orders, written = await self._rebuild_snapshot()
                ts = written or ts
            self._last_seen = ts
        await self._notify(orders)
        return True

    async def _poll_loop(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await self.poll_once()
            except (RedisError, SQLAlchemyError) as e:
                logger.warning("Sync poll failed: %s", e)
            try:
                await asyncio.wait_for(
                    shutdown_event.wait(), timeout=self._settings.sync_poll_interval
                )
            except asyncio.TimeoutError:
                pass

    async def _listen_loop(self, shutdown_event: asyncio.Event) -> None:
        pubsub = self._snapshot.redis.pubsub()
        await pubsub.subscribe(SYNC_CHANNEL)
        logger.info("Subscribed to %s channel", SYNC_CHANNEL)
        try:
            while not shutdown_event.is_set():
                try:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=1.0
                    )
                except RedisError as e:
                    logger.warning("Sync channel read failed: %s", e)
                    await asyncio.sleep(self._settings.sync_poll_interval)
                    continue
                if message and message["type"] == "message":
                    await self._on_sync_message(message["data"])
                else:
                    await asyncio.sleep(0.05)
        finally:
            await pubsub.unsubscribe(SYNC_CHANNEL)
            await pubsub.aclose()

    async def _on_sync_message(self, raw) -> None:
        try:
            data = json.loads(raw)
            timestamp = int(data.get("timestamp") or 0)
        except (ValueError, TypeError, AttributeError):
            return
        if data.get("type") != SYNC_MESSAGE_TYPE:
            return
        if timestamp > self._last_seen:
            try:
                await self.poll_once()
            except RedisError as e:
                logger.warning("Sync fast-path refresh failed: %s", e)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """ポーリングと通知購読を並行に走らせる。"""
        await asyncio.gather(
            self._poll_loop(shutdown_event),
            self._listen_loop(shutdown_event),
        )
