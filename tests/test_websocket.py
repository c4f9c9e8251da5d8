import asyncio

import pytest
from fakeredis import aioredis as fake_aioredis
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from conftest import CUSTOMER_ID, STAFF_ID, make_settings, seed, token_for

from app.db import init_db
from app.main import create_app


@pytest.fixture
def ws_client(tmp_path):
    application = create_app(make_settings(tmp_path), redis=fake_aioredis.FakeRedis(decode_responses=True))

    async def prepare():
        await init_db(application.state.engine)
        await seed(application.state.session_factory)

    asyncio.run(prepare())
    return TestClient(application)


def test_connection_without_token_is_refused(ws_client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with ws_client.websocket_connect("/ws"):
            pass
    assert exc.value.code == 1008


def test_connection_with_bad_token_is_refused(ws_client):
    with pytest.raises(WebSocketDisconnect):
        with ws_client.websocket_connect("/ws?token=garbage"):
            pass


def test_staff_joins_admin_room(ws_client):
    with ws_client.websocket_connect(f"/ws?token={token_for(STAFF_ID)}") as ws:
        ws.send_json({"event": "join-admin-room"})
        assert ws.receive_json() == {"event": "subscribed", "topic": "admin-room"}


def test_customer_is_refused_admin_room_but_keeps_connection(ws_client):
    with ws_client.websocket_connect(f"/ws?token={token_for(CUSTOMER_ID)}") as ws:
        ws.send_json({"event": "join-admin-room", "role": "admin"})
        reply = ws.receive_json()
        assert reply["event"] == "error"
        assert reply["code"] == "FORBIDDEN_TOPIC"

        ws.send_json({"event": "join-user-room", "data": CUSTOMER_ID})
        assert ws.receive_json() == {"event": "subscribed", "topic": f"user-{CUSTOMER_ID}"}


def test_non_json_frame_gets_error(ws_client):
    with ws_client.websocket_connect(f"/ws?token={token_for(CUSTOMER_ID)}") as ws:
        ws.send_text("{not json")
        assert ws.receive_json()["code"] == "INVALID_FRAME"
