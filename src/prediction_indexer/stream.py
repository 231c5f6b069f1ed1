"""Streaming chain connection: JSON-RPC log subscriptions over one WebSocket.

The socket is owned by a single receive-loop task. Responses resolve pending
request futures; subscription notifications are decoded with the contract's
event ABI and handed to their handler in arrival order.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import websockets
from hexbytes import HexBytes
from web3 import Web3
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from prediction_indexer.errors import ConnectionUnavailableError

log = logging.getLogger("idx.stream")

LogHandler = Callable[[dict], Awaitable[None]]
EventHandler = Callable[[Any], Awaitable[None]]
StreamEventSink = Callable[[str, "StreamConnection", Optional[BaseException]], None]

REQUEST_TIMEOUT_SEC = 30.0

_INT_FIELDS = ("blockNumber", "logIndex", "transactionIndex")
_HASH_FIELDS = ("blockHash", "transactionHash", "data")


def normalize_log(raw: dict) -> dict:
    """Convert a hex-encoded JSON-RPC log into the shape web3's event decoder expects."""
    entry = dict(raw)
    entry["topics"] = [HexBytes(t) for t in raw.get("topics", [])]
    for key in _HASH_FIELDS:
        if raw.get(key) is not None:
            entry[key] = HexBytes(raw[key])
    for key in _INT_FIELDS:
        value = raw.get(key)
        if isinstance(value, str):
            entry[key] = int(value, 16)
    if raw.get("address"):
        entry["address"] = Web3.to_checksum_address(raw["address"])
    return entry


def event_topic(event_abi: dict) -> str:
    signature = "{}({})".format(event_abi["name"], ",".join(i["type"] for i in event_abi["inputs"]))
    return Web3.to_hex(Web3.keccak(text=signature))


class StreamConnection:
    """One WebSocket to a node. Not reusable: a reconnect builds a new instance."""

    def __init__(
        self,
        url: str,
        node_index: int = 0,
        open_timeout: float = 15.0,
        on_event: StreamEventSink | None = None,
        on_activity: Callable[[float], None] | None = None,
    ):
        self.url = url
        self.node_index = node_index
        self.open_timeout = open_timeout
        self._on_event = on_event
        self._on_activity = on_activity
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._pending_handlers: dict[int, LogHandler] = {}
        self._handlers: dict[str, LogHandler] = {}
        self._closing = False
        self.last_activity: float | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    @property
    def subscription_count(self) -> int:
        return len(self._handlers)

    async def connect(self) -> None:
        self._ws = await websockets.connect(
            self.url,
            open_timeout=self.open_timeout,
            ping_interval=20,
            ping_timeout=20,
            max_size=None,
        )
        self._touch()
        self._reader = asyncio.create_task(self._read_loop(), name=f"stream-reader-{self.node_index}")
        log.info("WS_OPEN │ node=%d %s", self.node_index, self.url)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._fail_pending(ConnectionUnavailableError("stream closed"))
        self._handlers.clear()

    async def request(self, method: str, params: list) -> Any:
        if not self.is_open:
            raise ConnectionUnavailableError(f"stream to node {self.node_index} is not open")
        req_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        await self._ws.send(json.dumps({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}))
        try:
            return await asyncio.wait_for(future, REQUEST_TIMEOUT_SEC)
        finally:
            self._pending.pop(req_id, None)
            self._pending_handlers.pop(req_id, None)

    async def subscribe_logs(self, address: str, topics: list, handler: LogHandler) -> str:
        if not self.is_open:
            raise ConnectionUnavailableError(f"stream to node {self.node_index} is not open")
        req_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        # Registered by the reader when the response arrives, ahead of any notification
        self._pending_handlers[req_id] = handler
        payload = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "eth_subscribe",
            "params": ["logs", {"address": address, "topics": topics}],
        }
        await self._ws.send(json.dumps(payload))
        try:
            return await asyncio.wait_for(future, REQUEST_TIMEOUT_SEC)
        finally:
            self._pending.pop(req_id, None)
            self._pending_handlers.pop(req_id, None)

    async def unsubscribe(self, subscription_id: str) -> bool:
        self._handlers.pop(subscription_id, None)
        if not self.is_open:
            return False
        return bool(await self.request("eth_unsubscribe", [subscription_id]))

    def _touch(self) -> None:
        self.last_activity = time.monotonic()
        if self._on_activity is not None:
            self._on_activity(self.last_activity)

    def _emit(self, kind: str, exc: BaseException | None = None) -> None:
        if self._on_event is not None and not self._closing:
            self._on_event(kind, self, exc)

    def _fail_pending(self, exc: BaseException) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()
        self._pending_handlers.clear()

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                self._touch()
                try:
                    msg = json.loads(raw)
                except ValueError:
                    log.warning("WS_BAD_FRAME │ node=%d %r", self.node_index, raw[:200])
                    continue
                await self._dispatch(msg)
            self._fail_pending(ConnectionUnavailableError("stream closed"))
            self._emit("close")
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            self._fail_pending(ConnectionUnavailableError(f"stream closed: {e}"))
            self._emit("close", e)
        except Exception as e:
            log.exception("WS_READER │ node=%d failed", self.node_index)
            self._fail_pending(ConnectionUnavailableError(f"stream error: {e}"))
            self._emit("error", e)

    async def _dispatch(self, msg: dict) -> None:
        if "id" in msg and msg.get("id") is not None:
            req_id = msg["id"]
            future = self._pending.get(req_id)
            if future is None or future.done():
                return
            if "error" in msg:
                future.set_exception(RuntimeError(f"rpc error: {msg['error']}"))
                return
            handler = self._pending_handlers.pop(req_id, None)
            if handler is not None:
                self._handlers[msg["result"]] = handler
            future.set_result(msg.get("result"))
            return

        if msg.get("method") != "eth_subscription":
            return
        params = msg.get("params") or {}
        handler = self._handlers.get(params.get("subscription"))
        if handler is None:
            return
        try:
            await handler(params.get("result") or {})
        except Exception:
            log.exception("WS_HANDLER │ subscription %s", params.get("subscription"))


class StreamingContract:
    """Contract events bound to one StreamConnection.

    Rebuilt by the connection manager on every request so callers always
    subscribe against the live socket.
    """

    def __init__(self, stream: StreamConnection, contract):
        self.stream = stream
        self.contract = contract
        self._subscriptions: dict[str, str] = {}

    @property
    def address(self) -> str:
        return self.contract.address

    def _event_abi(self, event_name: str) -> dict:
        for entry in self.contract.abi:
            if entry.get("type") == "event" and entry.get("name") == event_name:
                return entry
        raise ValueError(f"event {event_name} not in contract ABI")

    async def subscribe(self, event_name: str, handler: EventHandler) -> str:
        topic = event_topic(self._event_abi(event_name))
        decoder = getattr(self.contract.events, event_name)()

        async def on_log(raw: dict) -> None:
            if raw.get("removed"):
                log.debug("WS_LOG_REMOVED │ %s tx=%s", event_name, raw.get("transactionHash"))
                return
            try:
                event = decoder.process_log(normalize_log(raw))
            except Exception as e:
                log.warning("WS_DECODE_FAIL │ %s tx=%s: %s", event_name, raw.get("transactionHash"), e)
                return
            await handler(event)

        sub_id = await self.stream.subscribe_logs(self.contract.address, [topic], on_log)
        self._subscriptions[sub_id] = event_name
        log.debug("WS_SUBSCRIBED │ %s id=%s", event_name, sub_id)
        return sub_id

    async def unsubscribe_all(self) -> int:
        removed = 0
        for sub_id in list(self._subscriptions):
            self._subscriptions.pop(sub_id, None)
            try:
                if await self.stream.unsubscribe(sub_id):
                    removed += 1
            except (ConnectionUnavailableError, RuntimeError, asyncio.TimeoutError) as e:
                log.debug("WS_UNSUBSCRIBE │ %s: %s", sub_id, e)
        return removed
