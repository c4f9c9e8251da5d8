"""
Order Service — リアルタイム Fan-out チャネル (トピックハブ)

クライアントごとに 1 本の WebSocket 接続を持ち、接続は複数のトピック
(user-{id}, admin-room, kitchen, order-{id}, inventory-updates) を購読する。

  publish ──▶ TopicHub ──▶ Connection.enqueue ──▶ 送信キュー ──▶ writer タスク ──▶ WebSocket

配信保証は at-most-once / best-effort:
  - 切断中のクライアントはイベントを取りこぼす (リプレイログは持たない)
  - 送信キューが溢れたクライアントへのイベントは破棄する
  - クライアントは (再)接続時に GET /orders/{id} で全件を取り直して整合させる
これはコストと単純さのためのトレードオフであり、バグではない。

publish は送信キューに積むだけで即座に戻る。送信失敗は呼び出し元に伝播しない。
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import WebSocketDisconnect

from . import events

logger = logging.getLogger(__name__)


class Connection:
    """
    1 クライアント分の接続。ライフサイクル:
        open (start) → subscribe / unsubscribe → close
    """

    def __init__(self, websocket, principal=None, queue_size: int = 100) -> None:
        self.id = uuid4().hex
        self.websocket = websocket
        self.principal = principal
        self.topics: set[str] = set()
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: asyncio.Task | None = None

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._pump())

    def enqueue(self, message: dict) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Connection %s send queue full; dropping %s", self.id, message.get("event")
            )
            return False
        return True

    async def _pump(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.websocket.send_json(message)
            except Exception:
                logger.info("Connection %s send failed; marking closed", self.id)
                self.closed = True
                return
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """キューに積まれたメッセージが送信し終わるまで待つ。"""
        if self._writer is not None and not self._writer.done():
            await self._queue.join()

    async def close(self) -> None:
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None


class TopicHub:
    """トピック (ルーム) と接続の対応表。プロセス内で配信する。"""

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._rooms: dict[str, set[Connection]] = defaultdict(set)
        self._connections: dict[str, Connection] = {}

    # ── 接続ライフサイクル ────────────────────────

    def open(self, websocket, principal=None) -> Connection:
        conn = Connection(websocket, principal, self._queue_size)
        conn.start()
        self._connections[conn.id] = conn
        logger.info("Client connected: %s", conn.id)
        return conn

    def subscribe(self, conn: Connection, topic: str) -> None:
        self._rooms[topic].add(conn)
        conn.topics.add(topic)
        logger.info("Client %s joined %s", conn.id, topic)

    def unsubscribe(self, conn: Connection, topic: str) -> None:
        room = self._rooms.get(topic)
        if room is not None:
            room.discard(conn)
            if not room:
                del self._rooms[topic]
        conn.topics.discard(topic)

    async def disconnect(self, conn: Connection) -> None:
        """全トピックから外し、writer タスクを止める。何も保持しない。"""
        for topic in list(conn.topics):
            self.unsubscribe(conn, topic)
        self._connections.pop(conn.id, None)
        await conn.close()
        logger.info("Client disconnected: %s", conn.id)

    async def close_all(self) -> None:
        for conn in list(self._connections.values()):
            await self.disconnect(conn)

    # ── 配信 ─────────────────────────────────────

    def publish(self, topic: str, event: str, payload: Any) -> int:
        """トピックの購読者全員の送信キューに積む。積めた数を返す。"""
        message = {"event": event, "topic": topic, "data": payload}
        delivered = 0
        for conn in list(self._rooms.get(topic, ())):
            if conn.closed:
                self.unsubscribe(conn, topic)
                continue
            if conn.enqueue(message):
                delivered += 1
        if not delivered:
            logger.debug("No subscribers received %s on %s", event, topic)
        return delivered

    def broadcast(self, event: str, payload: Any) -> int:
        message = {"event": event, "topic": None, "data": payload}
        return sum(
            1 for conn in list(self._connections.values())
            if not conn.closed and conn.enqueue(message)
        )

    def subscriber_count(self, topic: str) -> int:
        return len(self._rooms.get(topic, ()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)


# ── クライアントからのフレーム処理 ────────────────

JOIN_EVENTS: dict[str, Callable[[Any], str]] = {
    "join-user-room": lambda data: events.user_topic(str(data)),
    "join-admin-room": lambda _data: events.ADMIN_ROOM,
    "join-kitchen": lambda _data: events.KITCHEN,
    "subscribe-inventory": lambda _data: events.INVENTORY_UPDATES,
    "track-order": lambda data: events.order_topic(str(data)),
}

LEAVE_EVENTS: dict[str, Callable[[Any], str]] = {
    "stop-tracking-order": lambda data: events.order_topic(str(data)),
    "leave": lambda data: str(data),
}

TopicAuthorizer = Callable[[Any, str], Awaitable[bool]]


async def handle_frame(hub: TopicHub, conn: Connection, frame: Any, authorize: TopicAuthorizer) -> None:
    """
    クライアントフレーム {"event": ..., "data": ...} を 1 つ処理する。

    トピックへの参加は毎回サーバー側で認可する。クライアントが自己申告する
    ロールは一切信用しない。
    """
    if not isinstance(frame, dict):
        conn.enqueue({"event": "error", "code": "INVALID_FRAME"})
        return
    name = frame.get("event")
    data = frame.get("data")

    if name in JOIN_EVENTS:
        if name in ("join-user-room", "track-order") and not data:
            conn.enqueue({"event": "error", "code": "INVALID_FRAME", "detail": name})
            return
        topic = JOIN_EVENTS[name](data)
        if not await authorize(conn.principal, topic):
            logger.warning("Client %s denied join to %s", conn.id, topic)
            conn.enqueue({"event": "error", "code": "FORBIDDEN_TOPIC", "topic": topic})
            return
        hub.subscribe(conn, topic)
        conn.enqueue({"event": "subscribed", "topic": topic})
    elif name in LEAVE_EVENTS:
        topic = LEAVE_EVENTS[name](data)
        hub.unsubscribe(conn, topic)
        conn.enqueue({"event": "unsubscribed", "topic": topic})
    else:
        conn.enqueue({"event": "error", "code": "UNKNOWN_EVENT", "detail": name})


async def serve_connection(hub: TopicHub, websocket, principal, authorize: TopicAuthorizer) -> None:
    """WebSocket 1 本分の受信ループ。切断時に全トピックの購読を解除する。"""
    conn = hub.open(websocket, principal)
    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                conn.enqueue({"event": "error", "code": "INVALID_FRAME"})
                continue
            await handle_frame(hub, conn, frame, authorize)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(conn)
