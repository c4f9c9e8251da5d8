"""
Order Service — コマンドハンドラ (Write 側)

コマンドは注文ストアを変更し、コミット後に副作用を起こす:
  - Fan-out チャネルへのイベント発行
  - 通知 (メール) の送信依頼
  - 共有スナップショットの更新

副作用はどれも fire-and-forget。失敗してもコミット済みの注文は巻き戻さない。
永続化の失敗だけは DependencyError として呼び出し元に返す。
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import pricing, queries
from .aggregate import TransitionPolicy, apply_transition, initial_status, parse_status
from .catalog import CatalogStore
from .config import Settings
from .errors import AuthenticationError, DependencyError, NotFoundError, ValidationError
from .fanout import OrderEventPublisher
from .models import Order, OrderItem, User
from .notifications import Notifier
from .schemas import CreateOrderRequest, OrderItemRequest
from .snapshot import OrderSnapshot

logger = logging.getLogger(__name__)

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class OrderEffects:
    """コミット後に起こす副作用の送り先。None のものは起こさない。"""
    publisher: OrderEventPublisher | None = None
    notifier: Notifier | None = None
    snapshot: OrderSnapshot | None = None


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def price_items(items: list[OrderItemRequest], pizzas: dict) -> list[OrderItem]:
    """
    明細ごとにサーバー側で価格を計算する。

    カタログに商品があれば通常の計算式、無ければクライアント提示の単価を
    使う劣化パス。どちらも使えない明細 (カタログに無く単価も無い) は除外する。
    """
    lines: list[OrderItem] = []
    for item in items:
        quantity = pricing.normalize_quantity(item.quantity)
        pizza = pizzas.get(item.pizza_id) if item.pizza_id else None
        if pizza is not None:
            unit_price = pricing.compute_unit_price(pizza, item.size)
            name = pizza.name
            image = pizza.image or item.image
        elif item.unit_price is not None and item.unit_price > 0:
            unit_price = pricing.compute_fallback_unit_price(item.unit_price, item.size)
            name = item.name
            image = item.image
            logger.info(
                "Degraded pricing for item %r (pizza_id=%s)", item.name, item.pizza_id
            )
        else:
            logger.warning(
                "Dropping unresolvable item %r (pizza_id=%s)", item.name, item.pizza_id
            )
            continue
        lines.append(
            OrderItem(
                position=len(lines),
                pizza_id=item.pizza_id,
                name=name,
                image=image,
                size=item.size,
                quantity=quantity,
                unit_price=unit_price,
                total_price=pricing.compute_line_total(unit_price, quantity),
            )
        )
    return lines


async def create_order(
    session: AsyncSession,
    catalog: CatalogStore,
    req: CreateOrderRequest,
    principal,
    settings: Settings,
    effects: OrderEffects | None = None,
    cid: str | None = None,
) -> Order:
    """
    注文作成コマンド

    1. 必須項目を検証
    2. カタログを並列に引いて価格を再計算 (クライアントの合計は参考値)
    3. 初期ステータスを決めて注文を保存
    4. new-order をファンアウト、確認メールを依頼、スナップショットを更新
    """
    if not req.items:
        raise ValidationError("Cart items are required", code="EMPTY_ORDER")
    if req.delivery_address is None:
        raise ValidationError("Delivery address is required", code="MISSING_DELIVERY_ADDRESS")

    pizzas = await catalog.get_pizzas_by_ids(item.pizza_id for item in req.items)
    lines = price_items(req.items, pizzas)
    if not lines:
        raise NotFoundError(
            "None of the ordered items could be priced", code="NO_RESOLVABLE_ITEMS"
        )

    total = pricing.compute_order_total(lines)
    if req.total_amount is not None and pricing.round2(req.total_amount) != total:
        logger.info(
            "Advisory total %s differs from computed total %s; using computed",
            req.total_amount, total,
        )

    status, payment_status = initial_status(req.payment_method)
    now = datetime.now(timezone.utc)
    order = Order(
        id=str(uuid4()),
        order_number=generate_order_number(),
        status=status.value,
        payment_status=payment_status.value,
        payment_method=req.payment_method,
        delivery_address=req.delivery_address.model_dump(),
        special_instructions=req.special_instructions,
        estimated_delivery_time=now + timedelta(minutes=settings.estimated_delivery_minutes),
        total_amount=total,
        created_at=now,
        updated_at=now,
        items=lines,
    )

    try:
        user = await session.get(User, principal.user_id)
        if user is None:
            raise AuthenticationError("User no longer exists", code="INVALID_TOKEN")
        order.user = user
        session.add(order)
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.exception("Order persistence failed")
        raise DependencyError("Could not place order", code="ORDER_NOT_PLACED") from e

    logger.info(
        "Order %s created (%s, %d items, total %s)",
        order.order_number, order.status, len(lines), total,
    )

    order_dict = queries.serialize_order(order)
    effects = effects or OrderEffects()
    if effects.publisher is not None:
        effects.publisher.order_created(order_dict, queries.serialize_customer(order.user))
    if effects.notifier is not None:
        effects.notifier.order_confirmation(principal.email, order_dict, cid)
    if effects.snapshot is not None:
        await effects.snapshot.refresh(session)
    return order


async def update_order_status(
    session: AsyncSession,
    order_id: str,
    new_status: str,
    policy: TransitionPolicy,
    effects: OrderEffects | None = None,
    cid: str | None = None,
) -> Order:
    """
    ステータス更新コマンド (スタッフ操作)

    状態機械で遷移を検証してから保存する。同じ注文への同時更新は
    直列化しない (後勝ち)。
    """
    parse_status(new_status)

    try:
        order = await queries.get_order(session, order_id)
    except SQLAlchemyError as e:
        raise DependencyError("Could not update order", code="ORDER_UPDATE_FAILED") from e
    if order is None:
        raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")

    previous = order.status
    apply_transition(order, new_status, policy)

    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.exception("Status update for order %s failed", order_id)
        raise DependencyError("Could not update order", code="ORDER_UPDATE_FAILED") from e

    logger.info("Order %s status %s -> %s", order.order_number, previous, order.status)

    order_dict = queries.serialize_order(order)
    effects = effects or OrderEffects()
    if effects.publisher is not None:
        effects.publisher.order_status_changed(order_dict)
    if effects.notifier is not None and order.user is not None:
        effects.notifier.order_status(order.user.email, order_dict, cid)
    if effects.snapshot is not None:
        await effects.snapshot.refresh(session)
    return order
