"""
Order Service — 注文イベントのルーティング

ドメインで起きた出来事を、どのトピックにどのイベントとして流すかを決める。
チャネルは TopicHub (プロセス内) か RedisRelay (複数ワーカー) のどちらか。

publish の失敗はログに残して握りつぶす。注文操作そのものは成功扱い。
"""

import logging

from . import events

logger = logging.getLogger(__name__)

# キッチン向けには配達先・支払い・連絡先を含めない
KITCHEN_FIELDS = ("id", "order_number", "status", "items", "special_instructions", "created_at")


def kitchen_view(order: dict) -> dict:
    return {k: order.get(k) for k in KITCHEN_FIELDS}


def status_summary(order: dict) -> events.OrderStatusChanged:
    return events.OrderStatusChanged(
        order_id=order["id"],
        user_id=order.get("user_id"),
        status=order["status"],
        estimated_delivery=order.get("estimated_delivery_time"),
    )


class OrderEventPublisher:
    def __init__(self, channel) -> None:
        self._channel = channel

    def _publish(self, topic: str, event: str, payload: dict) -> None:
        try:
            self._channel.publish(topic, event, payload)
        except Exception:
            logger.exception("Fan-out publish failed: %s -> %s", event, topic)

    def order_created(self, order: dict, user: dict | None = None) -> None:
        """
        新規注文:
          admin-room      ← new-order {order, user}
          kitchen         ← new-order {order (キッチン向け)}
          user-{uid}      ← order-status-changed
          order-{oid}     ← order-status-changed
        """
        self._publish(
            events.ADMIN_ROOM,
            events.NEW_ORDER,
            events.dump(events.NewOrder(order=order, user=user)),
        )
        self._publish(
            events.KITCHEN,
            events.NEW_ORDER,
            events.dump(events.NewOrder(order=kitchen_view(order))),
        )
        summary = events.dump(status_summary(order))
        if order.get("user_id"):
            self._publish(events.user_topic(order["user_id"]), events.ORDER_STATUS_CHANGED, summary)
        self._publish(events.order_topic(order["id"]), events.ORDER_STATUS_CHANGED, summary)

    def order_status_changed(self, order: dict) -> None:
        """
        ステータス変更:
          user-{uid}      ← order-status-changed {orderId, status, estimatedDelivery}
          order-{oid}     ← order-updated {order}
          admin-room      ← order-updated {order}
        """
        if order.get("user_id"):
            self._publish(
                events.user_topic(order["user_id"]),
                events.ORDER_STATUS_CHANGED,
                events.dump(status_summary(order)),
            )
        snapshot = events.dump(events.OrderUpdated(order=order))
        self._publish(events.order_topic(order["id"]), events.ORDER_UPDATED, snapshot)
        self._publish(events.ADMIN_ROOM, events.ORDER_UPDATED, snapshot)

    def low_inventory(self, item: dict) -> None:
        payload = events.dump(events.LowInventoryAlert(item=item))
        self._publish(events.ADMIN_ROOM, events.LOW_INVENTORY_ALERT, payload)
        self._publish(events.INVENTORY_UPDATES, events.INVENTORY_LOW, payload)

    def menu_updated(self, action: str, pizza: dict | None = None, pizza_id: str | None = None) -> None:
        """メニュー変更は接続中の全クライアントへ流す。"""
        payload = events.dump(events.MenuUpdated(action=action, pizza=pizza, pizza_id=pizza_id))
        try:
            self._channel.broadcast(events.MENU_UPDATED, payload)
        except Exception:
            logger.exception("Fan-out broadcast failed: %s", events.MENU_UPDATED)
