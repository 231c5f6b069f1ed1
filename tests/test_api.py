"""Tests for the status API and push socket."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from prediction_indexer.api import create_app
from prediction_indexer.api.routes_ws import BroadcastHub


def _socket(state=WebSocketState.CONNECTED, fail=False):
    ws = MagicMock()
    ws.client_state = state
    ws.accept = AsyncMock()
    ws.send_json = AsyncMock()
    ws.send_text = AsyncMock(side_effect=RuntimeError("gone") if fail else None)
    return ws


class TestBroadcastHub:
    def test_connect_sends_confirmation(self):
        hub = BroadcastHub()
        ws = _socket()
        asyncio.run(hub.connect(ws))
        ws.accept.assert_awaited_once()
        confirmation = ws.send_json.await_args.args[0]
        assert confirmation["type"] == "connection"
        assert confirmation["status"] == "connected"
        assert isinstance(confirmation["timestamp"], int)
        assert hub.count == 1

    def test_broadcast_skips_closed_and_drops_failed(self):
        hub = BroadcastHub()
        ok, closed, broken = _socket(), _socket(WebSocketState.DISCONNECTED), _socket(fail=True)

        async def scenario():
            for ws in (ok, closed, broken):
                await hub.connect(ws)
            return await hub.broadcast({"channel": "round_event", "type": "start", "data": {"epoch": "1"}})

        assert asyncio.run(scenario()) == 1
        ok.send_text.assert_awaited_once_with(
            '{"channel": "round_event", "type": "start", "data": {"epoch": "1"}}'
        )
        closed.send_text.assert_not_awaited()
        assert hub.count == 2

    def test_broadcast_without_clients(self):
        assert asyncio.run(BroadcastHub().broadcast({"x": 1})) == 0


class TestRoutes:
    def _client(self):
        manager = MagicMock()
        manager.get_connection_stats.return_value = {"status": {"db_connected": True}}
        crawler = MagicMock()
        crawler.get_stats.return_value = {"rounds_processed": 4}
        listener = MagicMock()
        listener.get_status.return_value = {"connected_clients": 0}
        hub = BroadcastHub()
        return TestClient(create_app(manager, hub, crawler=crawler, listener=listener)), hub

    def test_health(self):
        client, _ = self._client()
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_status_document(self):
        client, _ = self._client()
        body = client.get("/api/status").json()
        assert body == {
            "historical_crawler": {"rounds_processed": 4},
            "realtime_listener": {"connected_clients": 0},
            "connection_manager": {"status": {"db_connected": True}},
        }

    def test_status_without_crawler(self):
        manager = MagicMock()
        manager.get_connection_stats.return_value = {}
        client = TestClient(create_app(manager, BroadcastHub()))
        assert client.get("/api/status").json()["historical_crawler"] is None

    def test_websocket_confirmation_and_ping(self):
        client, hub = self._client()
        with client.websocket_connect("/ws") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connection"
            assert hub.count == 1
            ws.send_text('{"type": "ping"}')
            assert ws.receive_json()["type"] == "pong"
