"""
Order Service — カタログ・在庫イベントの取り込み

メニューの編集と在庫管理は別サービスの責務。それらが catalog_events
チャネルに流すイベントを購読し、リアルタイムチャネルへ中継する。

  {"event_type": "MENU_UPDATED",  "data": {"action": "created", "pizza": {...}}}
  {"event_type": "MENU_UPDATED",  "data": {"action": "deleted", "pizzaId": "..."}}
  {"event_type": "LOW_INVENTORY", "data": {"item": {...}}}
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from .fanout import OrderEventPublisher

logger = logging.getLogger(__name__)

CHANNEL = "catalog_events"

MENU_UPDATED = "MENU_UPDATED"
LOW_INVENTORY = "LOW_INVENTORY"


def _relay_menu_updated(publisher: OrderEventPublisher, data: dict) -> bool:
    action = data.get("action")
    if not action:
        return False
    publisher.menu_updated(action, pizza=data.get("pizza"), pizza_id=data.get("pizzaId"))
    return True


def _relay_low_inventory(publisher: OrderEventPublisher, data: dict) -> bool:
    item = data.get("item")
    if not isinstance(item, dict):
        return False
    publisher.low_inventory(item)
    return True


def handle_event(publisher: OrderEventPublisher, event_type: str | None, data: dict) -> bool:
    """イベントタイプに応じた中継処理を呼び出す。扱えないイベントは False。"""
    handler = {
        MENU_UPDATED: _relay_menu_updated,
        LOW_INVENTORY: _relay_low_inventory,
    }.get(event_type)
    if handler is None:
        logger.debug("Ignoring catalog event %s", event_type)
        return False
    return handler(publisher, data)


async def run_subscriber(
    redis: aioredis.Redis,
    publisher: OrderEventPublisher,
    shutdown_event: asyncio.Event,
    channel: str = CHANNEL,
) -> None:
    """
    catalog_events チャネルを購読し、受信したイベントをファンアウトする。
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
                    event = json.loads(message["data"])
                    event_type = event.get("event_type")
                    if handle_event(publisher, event_type, event.get("data") or {}):
                        logger.info("Relayed catalog event: %s", event_type)
                except (ValueError, TypeError, AttributeError):
                    logger.exception("Failed to process catalog event")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
