"""
Order Service — 通知 (メール) の送信依頼

メール送信そのものは notification-service の責務。ここでは HTTP で依頼を
出すだけで、バックグラウンドタスクとして実行する。失敗してもログに残すだけで
注文操作には一切影響させない。
"""

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(
        self,
        base_url: str | None,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout
        self._transport = transport
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._base_url is not None

    def order_confirmation(self, recipient: str | None, order: dict, cid: str | None = None) -> None:
        self._dispatch(
            "ORDER_CREATED",
            recipient,
            f"Order Confirmation - #{order['order_number']}",
            f"Your order total is {order['total_amount']}. Status: {order['status']}",
            cid,
        )

    def order_status(self, recipient: str | None, order: dict, cid: str | None = None) -> None:
        self._dispatch(
            "ORDER_STATUS_CHANGED",
            recipient,
            f"Order Update - #{order['order_number']}",
            f"Your order is now {order['status']}.",
            cid,
        )

    def _dispatch(self, event_type: str, recipient: str | None, subject: str, message: str, cid: str | None) -> None:
        if not (self.enabled and recipient):
            return
        task = asyncio.create_task(self._send(event_type, recipient, subject, message, cid))
        self._pending.add(task)
        task.add_done_callback(self._done)

    async def _send(self, event_type: str, recipient: str, subject: str, message: str, cid: str | None) -> None:
        headers = {"X-Correlation-Id": cid} if cid else {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self._base_url}/v1/notifications/email",
                    json={
                        "event_type": event_type,
                        "recipient": recipient,
                        "subject": subject,
                        "message": message,
                        "correlation_id": cid,
                    },
                    headers=headers,
                )
            if resp.status_code >= 400:
                logger.warning(
                    "Notification %s rejected with status %s", event_type, resp.status_code
                )
        except httpx.HTTPError as e:
            logger.warning("Failed to send %s notification: %s", event_type, e)

    def _done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Notification task crashed: %s", task.exception())

    async def drain(self) -> None:
        """送信中の通知が全て終わるまで待つ (シャットダウン・テスト用)。"""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
