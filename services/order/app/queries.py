"""
Order Service — クエリハンドラ (Read 側)

注文ストアからの読み取りと、API / イベント / スナップショットで共通に使う
注文の dict 表現を提供する。
"""

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import ACTIVE_STATES, OrderStatus
from .errors import AuthorizationError, NotFoundError
from .models import Order
from .schemas import CustomerRead, OrderRead

MAX_LIMIT = 200


def _clamp_limit(limit: int | None, default: int) -> int:
    if not limit or limit < 1:
        return default
    return min(limit, MAX_LIMIT)


def serialize_order(order: Order) -> dict:
    return OrderRead.model_validate(order).model_dump(mode="json")


def serialize_customer(user) -> dict | None:
    if user is None:
        return None
    return CustomerRead.model_validate(user).model_dump(mode="json")


async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    return await session.get(Order, order_id)


async def get_order_for(session: AsyncSession, order_id: str, principal) -> Order:
    """本人またはスタッフのみ参照できる。"""
    order = await get_order(session, order_id)
    if order is None:
        raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
    if order.user_id != principal.user_id and not principal.is_staff:
        raise AuthorizationError("Access denied", code="ACCESS_DENIED")
    return order


async def list_user_orders(
    session: AsyncSession,
    user_id: str,
    status: str | None = None,
    limit: int | None = 20,
) -> list[Order]:
    """ユーザー自身の注文を新しい順に返す。"""
    stmt = select(Order).where(Order.user_id == user_id)
    if status:
        stmt = stmt.where(Order.status == status)
    stmt = stmt.order_by(Order.created_at.desc()).limit(_clamp_limit(limit, 20))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_orders(
    session: AsyncSession,
    status: str | None = None,
    limit: int | None = 50,
) -> list[Order]:
    """全注文を新しい順に返す (スタッフ用・スナップショット用)。"""
    stmt = select(Order)
    if status:
        stmt = stmt.where(Order.status == status)
    stmt = stmt.order_by(Order.created_at.desc()).limit(_clamp_limit(limit, 50))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def order_stats(session: AsyncSession) -> dict:
    """
    管理ダッシュボードの集計値。

    売上は配達完了 (delivered) の注文のみを対象とするため、
    平均注文額も配達完了件数で割る。
    """
    delivered = OrderStatus.DELIVERED.value

    total_orders = await session.scalar(select(func.count()).select_from(Order))
    pending_orders = await session.scalar(
        select(func.count()).select_from(Order)
        .where(Order.status.in_([s.value for s in ACTIVE_STATES]))
    )
    completed_orders = await session.scalar(
        select(func.count()).select_from(Order).where(Order.status == delivered)
    )
    total_revenue = await session.scalar(
        select(func.sum(Order.total_amount)).where(Order.status == delivered)
    )
    total_customers = await session.scalar(
        select(func.count(func.distinct(Order.user_id)))
    )

    revenue = Decimal(str(total_revenue or 0)).quantize(Decimal("0.01"))
    average = (
        (revenue / completed_orders).quantize(Decimal("0.01"))
        if completed_orders
        else Decimal("0.00")
    )
    return {
        "total_orders": total_orders or 0,
        "pending_orders": pending_orders or 0,
        "completed_orders": completed_orders or 0,
        "total_revenue": revenue,
        "average_order_value": average,
        "total_customers": total_customers or 0,
    }
