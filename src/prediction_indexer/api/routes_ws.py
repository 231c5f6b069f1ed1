"""WebSocket endpoint: pushes new bets and round lifecycle events to front-end clients."""

from __future__ import annotations

import json
import logging
import time

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

log = logging.getLogger("idx.api.ws")


class BroadcastHub:
    """Connected push clients. Messages are serialized once and sent to every open socket."""

    def __init__(self):
        self._connections: dict[int, WebSocket] = {}
        self._next_id: int = 0

    async def connect(self, ws: WebSocket) -> int:
        await ws.accept()
        conn_id = self._next_id
        self._next_id += 1
        self._connections[conn_id] = ws
        log.info("WS │ client %d connected (total=%d)", conn_id, len(self._connections))
        await ws.send_json({
            "type": "connection",
            "status": "connected",
            "timestamp": int(time.time() * 1000),
        })
        return conn_id

    def disconnect(self, conn_id: int) -> None:
        if self._connections.pop(conn_id, None) is not None:
            log.info("WS │ client %d disconnected (total=%d)", conn_id, len(self._connections))

    async def broadcast(self, message: dict) -> int:
        """Send to every connected client; drop the ones that fail. Returns clients reached."""
        if not self._connections:
            return 0
        payload = json.dumps(message, default=str)
        sent = 0
        dead = []
        for conn_id, ws in list(self._connections.items()):
            if ws.client_state != WebSocketState.CONNECTED:
                continue
            try:
                await ws.send_text(payload)
                sent += 1
            except Exception as e:
                log.debug("WS │ client %d send failed: %s", conn_id, e)
                dead.append(conn_id)
        for conn_id in dead:
            self.disconnect(conn_id)
        return sent

    @property
    def count(self) -> int:
        return len(self._connections)


def create_ws_router(hub: BroadcastHub) -> APIRouter:
    router = APIRouter()

    @router.websocket("/ws")
    async def ws_feed(ws: WebSocket):
        conn_id = await hub.connect(ws)
        try:
            while True:
                msg = await ws.receive_text()
                try:
                    data = json.loads(msg)
                except ValueError:
                    continue
                if isinstance(data, dict) and data.get("type") == "ping":
                    await ws.send_json({"type": "pong", "timestamp": int(time.time() * 1000)})
        except WebSocketDisconnect:
            pass
        except Exception as e:
            log.warning("WS │ client %d error: %s", conn_id, e)
        finally:
            hub.disconnect(conn_id)

    return router
