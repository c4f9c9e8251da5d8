"""
Order Service — 注文ステータスの状態機械

状態遷移:
    pending → confirmed → preparing → (baking) → (ready) → out-for-delivery → delivered
    非終端状態 → cancelled

    括弧付きの状態は省略可能 (前方へのスキップは許可)。
    delivered / cancelled は終端状態で、そこから先の遷移は一切受け付けない。

後退 (例: confirmed → pending) はデフォルトで拒否する。
スタッフによる巻き戻しを許可する場合は TransitionPolicy.allow_backward を
明示的に有効にする (設定 ALLOW_BACKWARD_TRANSITIONS)。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from .errors import InvalidTransitionError, ValidationError


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    BAKING = "baking"
    READY = "ready"
    OUT_FOR_DELIVERY = "out-for-delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


# 配達までの進行順。cancelled は順序を持たない
PROGRESSION: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.BAKING,
    OrderStatus.READY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)
_RANK = {status: i for i, status in enumerate(PROGRESSION)}

TERMINAL_STATES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# ダッシュボード上で「対応中」とみなす状態
ACTIVE_STATES = frozenset(set(PROGRESSION) - TERMINAL_STATES)

CASH_ON_DELIVERY = "cod"


@dataclass(frozen=True)
class TransitionPolicy:
    allow_backward: bool = False


DEFAULT_POLICY = TransitionPolicy()


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status: {value!r}",
            code="INVALID_STATUS",
            details={"allowed": [s.value for s in OrderStatus]},
        ) from None


def initial_status(payment_method: str | None) -> tuple[OrderStatus, PaymentStatus]:
    """
    注文作成時の初期状態を決める。

    代金引換 (cod) は受注時点で確定、支払いは未収。
    それ以外は決済ゲートウェイの「支払い完了」シグナルを受けて作成されるので
    支払いは完了、注文は店舗の確認待ち。
    """
    if (payment_method or "").lower() == CASH_ON_DELIVERY:
        return OrderStatus.CONFIRMED, PaymentStatus.PENDING
    return OrderStatus.PENDING, PaymentStatus.COMPLETED


def check_transition(
    current: OrderStatus,
    target: OrderStatus,
    policy: TransitionPolicy = DEFAULT_POLICY,
) -> None:
    """遷移が許可されなければ InvalidTransitionError を送出する。"""
    details = {"from": current.value, "to": target.value}
    if current in TERMINAL_STATES:
        raise InvalidTransitionError(
            f"Order is already {current.value}",
            code="TERMINAL_STATE",
            details=details,
        )
    if target == current:
        raise InvalidTransitionError(
            f"Order is already {current.value}",
            code="STATUS_UNCHANGED",
            details=details,
        )
    if target == OrderStatus.CANCELLED:
        return
    if _RANK[target] < _RANK[current] and not policy.allow_backward:
        raise InvalidTransitionError(
            f"Cannot move order back from {current.value} to {target.value}",
            code="BACKWARD_TRANSITION",
            details=details,
        )


def apply_transition(
    order,
    new_status: str,
    policy: TransitionPolicy = DEFAULT_POLICY,
    now: datetime | None = None,
):
    """
    注文にステータス遷移を適用する。

    受理された場合: status と updated_at を更新し、delivered へ入るときは
    delivered_at を記録する。拒否された場合は注文を一切変更しない。
    """
    target = parse_status(new_status)
    current = parse_status(order.status)
    check_transition(current, target, policy)

    now = now or datetime.now(timezone.utc)
    order.status = target.value
    order.updated_at = now
    if target == OrderStatus.DELIVERED:
        order.delivered_at = now
    return order
