"""Realtime listener: live bets and round events from the stream to push clients.

Per bet: dedup → suspicious-wallet check → broadcast → queue the realbet upsert.
Broadcast never waits on the datastore.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from web3 import Web3

from prediction_indexer.abi import BET_EVENTS, ROUND_EVENTS, to_ether
from prediction_indexer.api.routes_ws import BroadcastHub
from prediction_indexer.config import IndexerConfig
from prediction_indexer.connection import ConnectionManager
from prediction_indexer.models import C_GREEN, C_RED, C_RESET, C_YELLOW, Direction, InFlightBet, SuspicionCheck
from prediction_indexer.monitor import ProcessedBetCache, SuspiciousWalletMonitor
from prediction_indexer.persistence import statements as sql
from prediction_indexer.stream import StreamingContract
from prediction_indexer.time_service import current_local_time

log = logging.getLogger("idx.listener")

BET_DIRECTIONS = dict(zip(BET_EVENTS, (Direction.UP, Direction.DOWN)))
ROUND_EVENT_TYPES = dict(zip(ROUND_EVENTS, ("start", "lock", "end")))


class RealtimeListener:
    def __init__(self, manager: ConnectionManager, hub: BroadcastHub, cfg: IndexerConfig | None = None):
        self.manager = manager
        self.hub = hub
        self.cfg = cfg or manager.cfg
        self.monitor = SuspiciousWalletMonitor(self.cfg.suspicious_window_sec, self.cfg.suspicious_max_bets)
        self.processed = ProcessedBetCache(self.cfg.bet_cache_ttl_sec)
        self.contract: StreamingContract | None = None

        self._persist_queue: asyncio.Queue[tuple[InFlightBet, SuspicionCheck]] = asyncio.Queue()
        self._worker_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._reattach_task: asyncio.Task | None = None
        self._bind_lock = asyncio.Lock()
        self._stopped = False

    async def start(self) -> None:
        self._stopped = False
        self.manager.set_reconnect_callback(self.reattach)
        self._worker_task = asyncio.create_task(self._persist_worker(), name="realbet-writer")
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="bet-cache-sweep")
        await self.reattach()

    async def setup_events(self) -> None:
        """Bind every handler against a fresh streaming contract, dropping the previous binding.

        Serialized so overlapping reattach paths never leave a second live binding behind.
        """
        async with self._bind_lock:
            contract = self.manager.get_websocket_contract()
            if self.contract is not None:
                await self.contract.unsubscribe_all()
            self.contract = contract
            for event_name, direction in BET_DIRECTIONS.items():
                await contract.subscribe(event_name, functools.partial(self.handle_bet_event, direction=direction))
            for event_name, kind in ROUND_EVENT_TYPES.items():
                await contract.subscribe(event_name, functools.partial(self.handle_round_event, kind=kind))
        log.info("SUBSCRIBED │ %s bets + round events on %s", "/".join(BET_DIRECTIONS), contract.address)

    async def reattach(self) -> bool:
        """Called after each stream reconnect. Falls back to a timed retry when no binding exists."""
        self._cancel_reattach_retry()
        try:
            await self.setup_events()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("REATTACH │ failed: %s, retrying in %.0fs", e, self.cfg.reattach_retry_sec)
            self._schedule_reattach()
            return False

    def _cancel_reattach_retry(self) -> None:
        task, self._reattach_task = self._reattach_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _schedule_reattach(self) -> None:
        if self._stopped or (self._reattach_task is not None and not self._reattach_task.done()):
            return
        self._reattach_task = asyncio.create_task(self._reattach_retry_loop(), name="listener-reattach")

    async def _reattach_retry_loop(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.cfg.reattach_retry_sec)
            try:
                await self.setup_events()
                log.info("REATTACH │ listeners restored")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("REATTACH │ still failing: %s", e)

    # ── Event handlers ──

    async def handle_round_event(self, event: Any, kind: str) -> None:
        epoch = int(event["args"]["epoch"])
        log.info("ROUND_%s │ epoch %d", kind.upper(), epoch)
        await self.hub.broadcast({"channel": "round_event", "type": kind, "data": {"epoch": str(epoch)}})

    async def handle_bet_event(self, event: Any, direction: Direction) -> bool:
        """Broadcast a first-seen bet and queue its upsert. Returns False for duplicates."""
        args = event["args"]
        epoch = int(args["epoch"])
        wallet = str(args["sender"]).lower()
        if not self.processed.add_if_absent((epoch, wallet)):
            log.debug("BET_DUP │ epoch %d %s", epoch, wallet)
            return False

        tx_hash = event.get("transactionHash")
        bet = InFlightBet(
            epoch=epoch,
            bet_ts=current_local_time(self.cfg.timezone),
            wallet_address=wallet,
            bet_direction=direction,
            amount=to_ether(args["amount"]),
            tx_hash=Web3.to_hex(tx_hash) if tx_hash else "",
            block_number=int(event.get("blockNumber") or 0),
        )
        check = self.monitor.check(wallet)

        await self.hub.broadcast({
            "channel": "new_bet_data",
            "data": {**bet.as_payload(), "suspicious": check.as_dict()},
        })
        color = C_GREEN if direction is Direction.UP else C_RED
        log.info("BET │ %s%s%s %s %s (epoch %d)", color, direction.value, C_RESET, wallet, bet.amount, epoch)

        self._persist_queue.put_nowait((bet, check))
        return True

    # ── Persistence ──

    async def persist_bet(self, bet: InFlightBet, check: SuspicionCheck) -> None:
        try:
            await self.manager.execute_query(sql.upsert_realbet(self.manager.dialect, bet))
        except IntegrityError:
            log.info("REALBET_DUP │ %s already recorded for epoch %d", bet.wallet_address, bet.epoch)
            return
        except Exception as e:
            log.error("REALBET_FAIL │ epoch %d %s: %s", bet.epoch, bet.wallet_address, e)
            return
        if check.is_suspicious:
            log.warning("%sSUSPICIOUS%s │ %s: %s", C_YELLOW, C_RESET, bet.wallet_address, "; ".join(check.flags))

    async def _persist_worker(self) -> None:
        while True:
            bet, check = await self._persist_queue.get()
            try:
                await self.persist_bet(bet, check)
            finally:
                self._persist_queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued upsert has been attempted."""
        await self._persist_queue.join()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cfg.bet_cache_sweep_interval_sec)
            self.processed.sweep()

    # ── Reporting and shutdown ──

    def get_status(self) -> dict[str, Any]:
        return {
            "is_connected": self.contract is not None and self.manager.status.ws_connected,
            "connected_clients": self.hub.count,
            "has_websocket_server": self.hub is not None,
            "processed_bets_count": len(self.processed),
            "contract_address": self.cfg.contract_address or "Not set",
            "pending_writes": self._persist_queue.qsize(),
        }

    async def stop(self) -> None:
        log.info("STOP │ removing stream subscriptions")
        self._stopped = True
        self.manager.set_reconnect_callback(None)
        tasks = [t for t in (self._reattach_task, self._sweep_task, self._worker_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        async with self._bind_lock:
            if self.contract is not None:
                await self.contract.unsubscribe_all()
                self.contract = None
        self._reattach_task = self._sweep_task = self._worker_task = None
