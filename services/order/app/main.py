"""
Order Service — FastAPI エントリーポイント

  REST:      注文の作成・参照・ステータス更新 (スタッフ)
  WebSocket: /ws  リアルタイム Fan-out チャネル
  Sync:      /sync/orders  チャネルに繋がれないクライアント向けのポーリング口

┌──────────────┐  POST /orders   ┌───────────────┐   new-order      ┌────────────┐
│ 顧客サイト    │ ──────────────▶ │ Order Service │ ───────────────▶ │ 管理画面    │
│              │ ◀────────────── │               │  (admin-room)    │ / キッチン  │
└──────────────┘ order-status-   └──────┬────────┘                  └────────────┘
                 changed                │ スナップショット
                 (user-{id})            ▼
                                  Redis (pizzacraft_orders / orders_sync)

接続オブジェクト (DB エンジン・Redis・ハブ) は create_app() が所有し、
app.state 経由で各エンドポイントへ注入する。
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import WS_1008_POLICY_VIOLATION

from . import auth, catalog_events, commands, queries
from .aggregate import TransitionPolicy
from .catalog import CatalogStore
from .config import Settings, configure_logging
from .db import build_engine, build_session_factory, init_db
from .deps import get_correlation_id
from .errors import AuthenticationError, OrderServiceError
from .fanout import OrderEventPublisher
from .notifications import Notifier
from .realtime import TopicHub, serve_connection
from .relay import RedisRelay, run_subscriber
from .schemas import (
    AdminOrderRead,
    CreateOrderRequest,
    CreateOrderResponse,
    OrderRead,
    OrderStats,
    SyncSnapshot,
    UpdateStatusRequest,
)
from .snapshot import OrderSnapshot
from .sync_bridge import OrderSyncBridge

logger = logging.getLogger("order-service")

bearer = HTTPBearer(auto_error=False)


# ── Dependencies ─────────────────────────────────

async def get_session(request: Request):
    async with request.app.state.session_factory() as session:
        yield session


async def get_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    session: AsyncSession = Depends(get_session),
) -> auth.Principal:
    token = credentials.credentials if credentials else None
    return await auth.resolve_principal(session, token, request.app.state.settings)


async def get_staff(principal: auth.Principal = Depends(get_principal)) -> auth.Principal:
    return auth.require_staff(principal)


# ── App Factory ──────────────────────────────────

def create_app(settings: Settings | None = None, *, redis: aioredis.Redis | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    owns_redis = redis is None
    redis = redis or aioredis.from_url(settings.redis_url, decode_responses=True)
    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)

    hub = TopicHub(queue_size=settings.realtime_queue_size)
    channel = RedisRelay(redis) if settings.realtime_relay == "redis" else hub
    snapshot = OrderSnapshot(redis, limit=settings.sync_snapshot_limit)
    catalog = CatalogStore(session_factory)
    effects = commands.OrderEffects(
        publisher=OrderEventPublisher(channel),
        notifier=Notifier(settings.notification_service_url),
        snapshot=snapshot,
    )
    bridge = OrderSyncBridge(session_factory, catalog, snapshot, settings, effects)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        shutdown_event = asyncio.Event()
        tasks = [
            asyncio.create_task(
                catalog_events.run_subscriber(redis, effects.publisher, shutdown_event)
            ),
        ]
        if settings.sync_poller_enabled:
            tasks.append(asyncio.create_task(bridge.run(shutdown_event)))
        if isinstance(channel, RedisRelay):
            tasks.append(asyncio.create_task(run_subscriber(redis, hub, shutdown_event)))
        logger.info("Order service started (relay=%s)", settings.realtime_relay)
        yield
        shutdown_event.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await effects.notifier.drain()
        if isinstance(channel, RedisRelay):
            await channel.drain()
        await hub.close_all()
        if owns_redis:
            await redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.hub = hub
    app.state.catalog = catalog
    app.state.effects = effects
    app.state.snapshot = snapshot
    app.state.bridge = bridge
    app.state.policy = TransitionPolicy(allow_backward=settings.allow_backward_transitions)

    _register_handlers(app)
    _register_routes(app)
    return app


def _register_handlers(app: FastAPI) -> None:
    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        cid = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        request.state.correlation_id = cid
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = cid
        return response

    @app.exception_handler(OrderServiceError)
    async def handle_order_error(request: Request, exc: OrderServiceError):
        cid = getattr(request.state, "correlation_id", None)
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        else:
            logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "correlationId": cid},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        """リクエスト形式の誤りも他のエラーと同じ形で返す。"""
        cid = getattr(request.state, "correlation_id", None)
        fields = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
            for err in exc.errors()
        ]
        logger.info("%s %s rejected: invalid request body", request.method, request.url.path)
        return JSONResponse(
            status_code=400,
            content={
                "code": "VALIDATION_ERROR",
                "error": "Invalid request",
                "fields": fields,
                "correlationId": cid,
            },
        )


def _register_routes(app: FastAPI) -> None:

    # ── Command Endpoints ────────────────────────

    @app.post("/orders", response_model=CreateOrderResponse, status_code=201)
    async def create_order(
        req: CreateOrderRequest,
        request: Request,
        principal: auth.Principal = Depends(get_principal),
        session: AsyncSession = Depends(get_session),
        cid: str = Depends(get_correlation_id),
    ):
        """注文作成。合計金額はサーバー側で再計算する。"""
        state = request.app.state
        order = await commands.create_order(
            session, state.catalog, req, principal, state.settings, state.effects, cid
        )
        return CreateOrderResponse(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            estimated_delivery=order.estimated_delivery_time,
            total_amount=order.total_amount,
        )

    @app.patch("/orders/{order_id}/status")
    async def update_order_status(
        order_id: str,
        req: UpdateStatusRequest,
        request: Request,
        principal: auth.Principal = Depends(get_staff),
        session: AsyncSession = Depends(get_session),
        cid: str = Depends(get_correlation_id),
    ):
        """ステータス更新 (スタッフのみ)"""
        state = request.app.state
        order = await commands.update_order_status(
            session, order_id, req.status, state.policy, state.effects, cid
        )
        return {
            "message": "Order status updated successfully",
            "order": queries.serialize_order(order),
        }

    # ── Query Endpoints ──────────────────────────

    @app.get("/orders", response_model=List[OrderRead])
    async def list_my_orders(
        status: Optional[str] = None,
        limit: int = Query(20, ge=1, le=queries.MAX_LIMIT),
        principal: auth.Principal = Depends(get_principal),
        session: AsyncSession = Depends(get_session),
    ):
        """自分の注文一覧 (新しい順)"""
        return await queries.list_user_orders(session, principal.user_id, status, limit)

    @app.get("/orders/admin", response_model=List[AdminOrderRead])
    async def list_all_orders(
        status: Optional[str] = None,
        limit: int = Query(50, ge=1, le=queries.MAX_LIMIT),
        principal: auth.Principal = Depends(get_staff),
        session: AsyncSession = Depends(get_session),
    ):
        """全注文一覧 (スタッフのみ)"""
        return await queries.list_orders(session, status, limit)

    @app.get("/orders/admin/stats", response_model=OrderStats)
    async def get_order_stats(
        principal: auth.Principal = Depends(get_staff),
        session: AsyncSession = Depends(get_session),
    ):
        """ダッシュボード集計 (スタッフのみ)"""
        return OrderStats(**await queries.order_stats(session))

    @app.get("/orders/{order_id}", response_model=OrderRead)
    async def get_order(
        order_id: str,
        principal: auth.Principal = Depends(get_principal),
        session: AsyncSession = Depends(get_session),
    ):
        """注文詳細 (本人またはスタッフ)。再接続時の全件取り直しにも使う。"""
        return await queries.get_order_for(session, order_id, principal)

    # ── Sync Bridge ──────────────────────────────

    @app.get("/sync/orders", response_model=SyncSnapshot)
    async def poll_orders(
        request: Request,
        since: int = Query(0, ge=0),
        principal: auth.Principal = Depends(get_staff),
    ):
        """
        ポーリング用スナップショット。since (epoch ミリ秒) より新しければ
        注文一覧を返し、変化が無ければ changed=false だけを返す。
        スナップショットが読めないときは注文ストアから返す (timestamp=0)。
        """
        state = request.app.state
        try:
            ts = await state.snapshot.read_timestamp()
        except RedisError as e:
            logger.warning("Snapshot unavailable, serving orders from store: %s", e)
            return SyncSnapshot(changed=True, timestamp=0, orders=await state.bridge.get_orders())
        if ts == 0:
            orders = await state.bridge.get_orders()
            ts = await state.snapshot.read_timestamp()
            return SyncSnapshot(changed=True, timestamp=ts, orders=orders)
        if since >= ts:
            return SyncSnapshot(changed=False, timestamp=ts, orders=[])
        return SyncSnapshot(changed=True, timestamp=ts, orders=await state.bridge.get_orders())

    # ── Realtime Channel ─────────────────────────

    @app.websocket("/ws")
    async def realtime_channel(websocket: WebSocket, token: Optional[str] = None):
        state = websocket.app.state
        try:
            async with state.session_factory() as session:
                principal = await auth.resolve_principal(session, token, state.settings)
        except AuthenticationError as e:
            logger.info("WebSocket rejected: %s", e.code)
            await websocket.close(code=WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()

        async def authorize(p, topic: str) -> bool:
            async with state.session_factory() as session:
                return await auth.authorize_topic(session, p, topic)

        await serve_connection(state.hub, websocket, principal, authorize)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}


app = create_app()
