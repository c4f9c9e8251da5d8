"""
Order Service — リアルタイムイベント定義

Fan-out チャネルに流すイベントのペイロード。
Status Event は永続化せず、チャネル上にだけ存在する。
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ── トピック ─────────────────────────────────────

ADMIN_ROOM = "admin-room"
KITCHEN = "kitchen"
INVENTORY_UPDATES = "inventory-updates"


def user_topic(user_id: str) -> str:
    return f"user-{user_id}"


def order_topic(order_id: str) -> str:
    return f"order-{order_id}"


# ── イベント名 ───────────────────────────────────

NEW_ORDER = "new-order"
ORDER_UPDATED = "order-updated"
ORDER_STATUS_CHANGED = "order-status-changed"
MENU_UPDATED = "menu-updated"
LOW_INVENTORY_ALERT = "low-inventory-alert"
INVENTORY_LOW = "inventory-low"


# ── ペイロード ───────────────────────────────────

class NewOrder(BaseModel):
    """新規注文 (管理画面・キッチン向け)"""
    order: dict
    user: Optional[dict] = None


class OrderUpdated(BaseModel):
    """注文スナップショット全体"""
    order: dict


class OrderStatusChanged(BaseModel):
    """顧客向けのステータス要約 (Status Event)"""
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(serialization_alias="orderId")
    user_id: Optional[str] = Field(None, exclude=True)
    status: str
    estimated_delivery: Optional[datetime] = Field(None, serialization_alias="estimatedDelivery")


class MenuUpdated(BaseModel):
    """カタログ管理側からのメニュー変更通知"""
    model_config = ConfigDict(populate_by_name=True)

    action: str
    pizza: Optional[dict] = None
    pizza_id: Optional[str] = Field(None, serialization_alias="pizzaId")


class LowInventoryAlert(BaseModel):
    """在庫管理側からの在庫不足通知"""
    item: dict[str, Any]


def dump(payload: BaseModel) -> dict:
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)
