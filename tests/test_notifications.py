import json

import httpx

from conftest import order_payload

from app.notifications import Notifier

ORDER = {"order_number": "ORD-1-ABC", "total_amount": "503.70", "status": "confirmed"}


def recording_transport(requests, status_code=202):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={"ok": True})
    return httpx.MockTransport(handler)


async def test_order_confirmation_is_posted():
    requests = []
    notifier = Notifier("http://notify/", transport=recording_transport(requests))

    notifier.order_confirmation("customer@example.com", ORDER, "cid-9")
    await notifier.drain()

    [request] = requests
    assert str(request.url) == "http://notify/v1/notifications/email"
    assert request.headers["X-Correlation-Id"] == "cid-9"
    body = json.loads(request.content)
    assert body["event_type"] == "ORDER_CREATED"
    assert body["recipient"] == "customer@example.com"
    assert "ORD-1-ABC" in body["subject"]


async def test_disabled_notifier_sends_nothing():
    requests = []
    notifier = Notifier(None, transport=recording_transport(requests))

    notifier.order_status("customer@example.com", ORDER)
    await notifier.drain()

    assert not notifier.enabled
    assert requests == []


async def test_transport_failure_is_swallowed():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    notifier = Notifier("http://notify", transport=httpx.MockTransport(handler))
    notifier.order_status("customer@example.com", ORDER)
    await notifier.drain()


async def test_rejected_notification_is_swallowed():
    requests = []
    notifier = Notifier("http://notify", transport=recording_transport(requests, status_code=500))
    notifier.order_status("customer@example.com", ORDER)
    await notifier.drain()
    assert len(requests) == 1


async def test_order_creation_survives_notification_outage(app, client, customer_headers):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    app.state.effects.notifier = Notifier("http://notify", transport=httpx.MockTransport(handler))

    resp = await client.post("/orders", json=order_payload(), headers=customer_headers)
    await app.state.effects.notifier.drain()

    assert resp.status_code == 201


async def test_order_creation_sends_confirmation(app, client, customer_headers):
    requests = []
    app.state.effects.notifier = Notifier("http://notify", transport=recording_transport(requests))

    resp = await client.post(
        "/orders", json=order_payload(), headers={**customer_headers, "X-Correlation-Id": "cid-1"}
    )
    await app.state.effects.notifier.drain()

    assert resp.status_code == 201
    [request] = requests
    assert request.headers["X-Correlation-Id"] == "cid-1"
    body = json.loads(request.content)
    assert body["recipient"] == "customer@example.com"
