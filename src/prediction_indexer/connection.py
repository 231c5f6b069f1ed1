"""Connection lifecycle manager: datastore pool, HTTP chain node, streaming node.

One instance per process, shared by the crawler and the listener. Owns the
ConnectionStatus record; callers only ever see copies of it.

Stream lifecycle:
    disconnected → connecting → connected → (closed | errored) → reconnecting → connecting ...

Socket close/error notifications are queued and applied by one supervisor
task, so a burst of closes produces a single reconnect sequence.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool
from web3 import Web3

from prediction_indexer.abi import load_abi
from prediction_indexer.config import IndexerConfig
from prediction_indexer.errors import (
    ConnectionUnavailableError,
    DatabaseUnavailableError,
    NodeExhaustedError,
)
from prediction_indexer.models import C_GREEN, C_RED, C_RESET, ConnectionStatus
from prediction_indexer.persistence.db import create_db_engine
from prediction_indexer.stream import StreamConnection, StreamingContract
from prediction_indexer.time_service import utc_now_iso

log = logging.getLogger("idx.connection")

DB_ACQUIRE_ATTEMPTS = 3


@dataclass(frozen=True)
class QueryResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0


def _flag(ok: bool) -> str:
    return f"{C_GREEN}up{C_RESET}" if ok else f"{C_RED}down{C_RESET}"


class ConnectionManager:
    """Process-wide owner of every external connection."""

    _instance: ClassVar[Optional["ConnectionManager"]] = None

    def __init__(self, cfg: IndexerConfig, abi: list[dict] | None = None):
        if ConnectionManager._instance is not None:
            raise RuntimeError("ConnectionManager already exists; use ConnectionManager.get_instance()")
        ConnectionManager._instance = self

        self.cfg = cfg
        self.abi = abi if abi is not None else load_abi(cfg.abi_path)
        self.http_urls: list[str] = [u for u in (cfg.rpc_http_url, *cfg.rpc_backup_urls) if u]
        self.ws_urls: list[str] = [u for u in (cfg.rpc_ws_url, *cfg.rpc_ws_backup_urls) if u]

        self._status = ConnectionStatus()
        self._status_lock = threading.Lock()

        self._engine = None
        self._db_healthy = False
        self._w3: Web3 | None = None
        self._contract = None
        self._stream: StreamConnection | None = None

        self._stream_events: asyncio.Queue = asyncio.Queue()
        self._supervisor_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnecting = False
        self._on_reconnect: Callable[[], Awaitable[None]] | None = None
        self._closed = False

    @classmethod
    def get_instance(cls, cfg: IndexerConfig | None = None) -> "ConnectionManager":
        if cls._instance is not None:
            return cls._instance
        if cfg is None:
            raise RuntimeError("ConnectionManager not constructed yet and no config given")
        return cls(cfg)

    # ── Status ──

    @property
    def status(self) -> ConnectionStatus:
        with self._status_lock:
            return dataclasses.replace(self._status)

    def _set_status(self, **changes: Any) -> None:
        with self._status_lock:
            for key, value in changes.items():
                setattr(self._status, key, value)

    @property
    def dialect(self) -> str:
        if self._engine is None:
            raise DatabaseUnavailableError("database pool not initialized")
        return self._engine.dialect.name

    @property
    def reconnecting(self) -> bool:
        return self._reconnecting

    # ── Startup ──

    async def initialize(self) -> None:
        """Bring up datastore, HTTP node, stream and contract. Raises if datastore or HTTP fail."""
        log.info("INIT │ connecting (http nodes=%d, ws nodes=%d)", len(self.http_urls), len(self.ws_urls))
        await asyncio.to_thread(self._init_database)
        self._w3 = await asyncio.to_thread(self._connect_http)

        if self._supervisor_task is None:
            self._supervisor_task = asyncio.create_task(self._supervise_stream(), name="stream-supervisor")
        if not await self._connect_stream():
            log.warning("INIT │ stream unavailable, will keep retrying in background")
            self._start_reconnect("initial connect failed")
        self._contract = await asyncio.to_thread(self._bind_contract, self._w3)

        if self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop(), name="health-check")
        self.log_connection_status()

    # ── Datastore ──

    def _init_database(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        cfg = self.cfg
        try:
            self._engine = create_db_engine(
                cfg.database_url,
                pool_size=cfg.db_pool_size,
                max_overflow=cfg.db_max_overflow,
                pool_timeout=cfg.db_pool_timeout_sec,
            )
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            self._db_healthy = False
            self._set_status(db_connected=False)
            raise DatabaseUnavailableError(f"database unreachable: {e}") from e
        self._db_healthy = True
        self._set_status(db_connected=True)
        log.info("DB_CONNECTED │ %s", self._engine.url.render_as_string(hide_password=True))

    def get_database_connection(self) -> Connection:
        """Blocking: pooled connection, rebuilding the pool when it is absent or unhealthy."""
        last_error: Exception | None = None
        for attempt in range(1, DB_ACQUIRE_ATTEMPTS + 1):
            try:
                if self._engine is None or not self._db_healthy:
                    self._init_database()
                return self._engine.connect()
            except (SQLAlchemyError, DatabaseUnavailableError) as e:
                last_error = e
                self._db_healthy = False
                self._set_status(db_connected=False)
                log.warning("DB_ACQUIRE │ attempt %d/%d failed: %s", attempt, DB_ACQUIRE_ATTEMPTS, e)
                if attempt < DB_ACQUIRE_ATTEMPTS:
                    time.sleep(self.cfg.db_retry_delay_sec * attempt)
        raise DatabaseUnavailableError(
            f"no database connection after {DB_ACQUIRE_ATTEMPTS} attempts: {last_error}"
        ) from last_error

    def _run_statements(self, statements: Sequence[Any], params: dict | None = None) -> QueryResult:
        conn = self.get_database_connection()
        try:
            rows: list[dict[str, Any]] = []
            rowcount = 0
            # begin() rolls back and re-raises on any statement error
            with conn.begin():
                for stmt in statements:
                    if isinstance(stmt, str):
                        result = conn.execute(text(stmt), params or {})
                    else:
                        result = conn.execute(stmt)
                    if result.returns_rows:
                        rows = [dict(m) for m in result.mappings()]
                    elif result.rowcount and result.rowcount > 0:
                        rowcount += result.rowcount
            return QueryResult(rows=rows, rowcount=rowcount or len(rows))
        finally:
            conn.close()

    async def execute_query(self, stmt: Any, params: dict | None = None) -> QueryResult:
        return await asyncio.to_thread(self._run_statements, [stmt], params)

    async def execute_transaction(self, statements: Sequence[Any]) -> QueryResult:
        """All statements in one BEGIN/COMMIT; the first failure rolls back and propagates."""
        return await asyncio.to_thread(self._run_statements, list(statements))

    # ── HTTP node ──

    def _connect_http(self) -> Web3:
        cfg = self.cfg
        for index, url in enumerate(self.http_urls):
            for attempt in range(1, cfg.rpc_attempts_per_url + 1):
                try:
                    w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": cfg.rpc_timeout_sec}))
                    block = w3.eth.block_number
                except Exception as e:
                    log.warning(
                        "HTTP_CONNECT │ node=%d attempt %d/%d failed: %s",
                        index, attempt, cfg.rpc_attempts_per_url, e,
                    )
                    if attempt < cfg.rpc_attempts_per_url:
                        time.sleep(cfg.rpc_retry_delay_sec)
                    continue
                self._set_status(http_connected=True, active_http_node_index=index)
                log.info("HTTP_CONNECTED │ node=%d block=%d", index, block)
                return w3
        self._set_status(http_connected=False)
        raise NodeExhaustedError(f"all {len(self.http_urls)} HTTP nodes failed")

    def _bind_contract(self, w3: Web3):
        contract = w3.eth.contract(address=Web3.to_checksum_address(self.cfg.contract_address), abi=self.abi)
        epoch = contract.functions.currentEpoch().call()
        log.info("CONTRACT_BOUND │ %s currentEpoch=%d", contract.address, epoch)
        return contract

    def get_http_provider(self) -> Web3:
        if self._w3 is None or not self.status.http_connected:
            raise ConnectionUnavailableError("HTTP node not connected")
        return self._w3

    def get_contract(self):
        if self._contract is None or not self.status.http_connected:
            raise ConnectionUnavailableError("contract not bound to a connected HTTP node")
        return self._contract

    # ── Stream ──

    def get_websocket_provider(self) -> StreamConnection:
        stream = self._stream
        if stream is None or not stream.is_open:
            raise ConnectionUnavailableError("stream not connected")
        return stream

    def get_websocket_contract(self) -> StreamingContract:
        """Fresh binding against the current stream. Never cached across reconnects."""
        stream = self.get_websocket_provider()
        if self._w3 is None:
            raise ConnectionUnavailableError("no HTTP node to build the event decoder from")
        contract = self._w3.eth.contract(address=Web3.to_checksum_address(self.cfg.contract_address), abi=self.abi)
        return StreamingContract(stream, contract)

    def set_reconnect_callback(self, callback: Callable[[], Awaitable[None]] | None) -> None:
        self._on_reconnect = callback

    def _queue_stream_event(self, kind: str, stream: StreamConnection, exc: BaseException | None) -> None:
        self._stream_events.put_nowait((kind, stream, exc))

    def _touch_activity(self, ts: float) -> None:
        self._set_status(ws_last_activity=ts)

    async def _connect_stream(self) -> bool:
        if not self.ws_urls:
            log.error("WS_CONNECT │ no stream endpoints configured")
            return False
        index = self.status.active_ws_node_index % len(self.ws_urls)
        stream = StreamConnection(
            self.ws_urls[index],
            node_index=index,
            open_timeout=self.cfg.ws_open_timeout_sec,
            on_event=self._queue_stream_event,
            on_activity=self._touch_activity,
        )
        try:
            await stream.connect()
        except Exception as e:
            log.warning("WS_CONNECT │ node=%d failed: %s", index, e)
            return False

        previous, self._stream = self._stream, stream
        if previous is not None:
            await previous.close()
        self._queue_stream_event("open", stream, None)
        return True

    async def _supervise_stream(self) -> None:
        while True:
            kind, stream, exc = await self._stream_events.get()
            try:
                self._handle_stream_event(kind, stream, exc)
            except Exception:
                log.exception("WS_SUPERVISOR │ failed handling %s", kind)

    def _handle_stream_event(self, kind: str, stream: StreamConnection, exc: BaseException | None) -> None:
        if stream is not self._stream:
            log.debug("WS_EVENT │ ignoring %s from replaced stream node=%d", kind, stream.node_index)
            return
        if kind == "open":
            now = time.monotonic()
            self._set_status(
                ws_connected=True,
                reconnect_attempts=0,
                ws_last_activity=now,
                ws_connection_started=now,
            )
            self._start_watchdog()
            log.info("WS_CONNECTED │ node=%d", stream.node_index)
        elif kind in ("close", "error"):
            log.warning("WS_%s │ node=%d %s", kind.upper(), stream.node_index, exc or "")
            self._set_status(ws_connected=False)
            self._stop_watchdog()
            self._start_reconnect(f"stream {kind}")

    def _start_reconnect(self, reason: str) -> bool:
        """Start the reconnect loop unless one is running. No await between check and set."""
        if self._closed or self._reconnecting:
            log.debug("WS_RECONNECT │ already in progress, skipping (%s)", reason)
            return False
        self._reconnecting = True
        log.info("WS_RECONNECT │ starting (%s)", reason)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name="stream-reconnect")
        return True

    async def _reconnect_loop(self) -> None:
        cfg = self.cfg
        connected = False
        try:
            while not self._closed:
                status = self.status
                attempts = status.reconnect_attempts + 1
                node = status.active_ws_node_index
                if attempts > cfg.max_reconnect_attempts:
                    node = (node + 1) % max(len(self.ws_urls), 1)
                    log.warning("WS_NODE_SWITCH │ %d attempts exhausted, moving to node %d",
                                cfg.max_reconnect_attempts, node)
                    attempts = 1
                self._set_status(reconnect_attempts=attempts, active_ws_node_index=node)

                delay = min(cfg.ws_reconnect_delay_sec * attempts, cfg.ws_reconnect_max_delay_sec)
                log.info("WS_RECONNECT │ attempt %d/%d on node %d in %.0fs",
                         attempts, cfg.max_reconnect_attempts, node, delay)
                await asyncio.sleep(delay)
                if self._closed:
                    break
                if await self._connect_stream():
                    connected = True
                    break
        finally:
            self._reconnecting = False

        if connected and self._on_reconnect is not None:
            try:
                await self._on_reconnect()
            except Exception:
                log.exception("WS_RECONNECT │ reconnect callback failed")

    # ── Watchdog and health ──

    def _start_watchdog(self) -> None:
        self._stop_watchdog()
        self._watchdog_task = asyncio.create_task(self._activity_watchdog(), name="stream-watchdog")

    def _stop_watchdog(self) -> None:
        task, self._watchdog_task = self._watchdog_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _activity_watchdog(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.ws_activity_check_interval_sec)
            if self.check_stream_activity():
                return

    def check_stream_activity(self) -> bool:
        """Force a reconnect when a stream marked connected has been silent too long."""
        status = self.status
        if not status.ws_connected or status.ws_last_activity is None:
            return False
        idle = time.monotonic() - status.ws_last_activity
        if idle < self.cfg.ws_activity_timeout_sec:
            return False
        log.warning("WS_STALE │ no activity for %.0fs, forcing reconnect", idle)
        self._set_status(ws_connected=False)
        self._start_reconnect("activity timeout")
        return True

    def _check_database(self) -> bool:
        if self._engine is None:
            return False
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            log.error("HEALTH │ database check failed: %s", e)
            return False

    def _check_http(self) -> bool:
        if self._w3 is not None:
            try:
                self._w3.eth.block_number
                return True
            except Exception as e:
                log.error("HEALTH │ HTTP node check failed: %s", e)
        try:
            self._w3 = self._connect_http()
            self._contract = self._bind_contract(self._w3)
            return True
        except NodeExhaustedError as e:
            log.error("HEALTH │ HTTP failover failed: %s", e)
            return False
        except Exception as e:
            log.error("HEALTH │ contract rebind failed: %s", e)
            return False

    async def check_health(self) -> dict[str, bool]:
        db_ok = await asyncio.to_thread(self._check_database)
        http_ok = await asyncio.to_thread(self._check_http)
        ws_ok = self._stream is not None and self._stream.is_open
        if not db_ok:
            self._db_healthy = False
        self._set_status(
            db_connected=db_ok,
            http_connected=http_ok,
            ws_connected=ws_ok,
            last_health_check=utc_now_iso(),
        )
        if not ws_ok:
            self._start_reconnect("health check")
        if not (db_ok and http_ok and ws_ok):
            log.warning("HEALTH │ db=%s http=%s ws=%s", _flag(db_ok), _flag(http_ok), _flag(ws_ok))
        return {"database": db_ok, "http_rpc": http_ok, "websocket": ws_ok}

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.health_check_interval_sec)
            try:
                await self.check_health()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("HEALTH │ check failed")

    # ── Reporting ──

    def get_connection_stats(self) -> dict[str, Any]:
        pool_stats = None
        if self._engine is not None and isinstance(self._engine.pool, QueuePool):
            pool = self._engine.pool
            pool_stats = {
                "size": pool.size(),
                "checked_in": pool.checkedin(),
                "checked_out": pool.checkedout(),
                "overflow": pool.overflow(),
            }
        status = self.status
        return {
            "status": status.as_dict(),
            "db_pool": pool_stats,
            "health_check": {
                "interval_sec": self.cfg.health_check_interval_sec,
                "last_check": status.last_health_check,
            },
        }

    def log_connection_status(self) -> None:
        s = self.status
        log.info(
            "STATUS │ db=%s http=%s (node %d) ws=%s (node %d) contract=%s",
            _flag(s.db_connected),
            _flag(s.http_connected), s.active_http_node_index,
            _flag(s.ws_connected), s.active_ws_node_index,
            _flag(self._contract is not None),
        )

    # ── Shutdown ──

    async def close(self) -> None:
        """Stop every task, close every connection, reset status, free the singleton slot."""
        log.info("CLOSE │ shutting down connections")
        self._closed = True
        self._stop_watchdog()
        tasks = [t for t in (self._health_task, self._reconnect_task, self._supervisor_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._health_task = self._reconnect_task = self._supervisor_task = None
        self._reconnecting = False

        if self._stream is not None:
            await self._stream.close()
            self._stream = None
        if self._engine is not None:
            await asyncio.to_thread(self._engine.dispose)
            self._engine = None
        self._w3 = None
        self._contract = None
        self._db_healthy = False
        with self._status_lock:
            self._status = ConnectionStatus()
        if ConnectionManager._instance is self:
            ConnectionManager._instance = None
