"""Historical crawler: rebuilds finalized rounds from chain history.

Two cooperating lines share one rate limiter:
  main line    backward scan from the settled tip to epoch 1, restarted every 30 min
  branch line  periodic re-check of the most recent settled epochs

Both skip epochs already in ``round`` and rely on conflict-tolerant writes, so a
race between them at worst repeats work.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from web3 import Web3

from prediction_indexer.abi import BET_EVENTS, CLAIM_EVENT, to_ether, to_price
from prediction_indexer.config import IndexerConfig
from prediction_indexer.connection import ConnectionManager
from prediction_indexer.errors import EpochReconstructionError, IncompleteEpochError
from prediction_indexer.models import (
    C_GREEN,
    C_RESET,
    C_YELLOW,
    BetResult,
    Claim,
    CrawlerStats,
    Direction,
    FailedEpoch,
    HistoricalBet,
    Round,
    calculate_payouts,
    round_result,
)
from prediction_indexer.persistence import statements as sql
from prediction_indexer.throttle import RateLimiter, with_retry
from prediction_indexer.time_service import format_unix_timestamp

log = logging.getLogger("idx.crawler")

ROUND_FIELDS = (
    "epoch",
    "startTimestamp",
    "lockTimestamp",
    "closeTimestamp",
    "lockPrice",
    "closePrice",
    "lockOracleId",
    "closeOracleId",
    "totalAmount",
    "bullAmount",
    "bearAmount",
    "rewardBaseCalAmount",
    "rewardAmount",
    "oracleCalled",
)


class HistoricalCrawler:
    def __init__(self, manager: ConnectionManager, cfg: IndexerConfig | None = None):
        self.manager = manager
        self.cfg = cfg or manager.cfg
        self.limiter = RateLimiter(self.cfg.max_requests_per_sec)
        self.stats = CrawlerStats()
        self.failed_attempts: dict[int, int] = {}

        self.main_active = False
        self.branch_active = False
        self.main_processing = False
        self._stop_main = False
        self._stopped = False

        self._main_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None
        self._branch_task: asyncio.Task | None = None

    # ── Lifecycle ──

    async def start(self) -> None:
        log.info("START │ main line every %.0fs, branch line every %.0fs after %.0fs",
                 self.cfg.main_restart_interval_sec, self.cfg.branch_interval_sec,
                 self.cfg.branch_start_delay_sec)
        self._stopped = False
        self.main_active = True
        self._main_task = asyncio.create_task(self.run_main_line(), name="crawler-main")
        self._restart_task = asyncio.create_task(self._restart_timer(), name="crawler-restart")
        self._branch_task = asyncio.create_task(self._branch_loop(), name="crawler-branch")

    async def stop(self) -> None:
        log.info("STOP │ stopping main and branch lines")
        self._stopped = True
        self._stop_main = True
        tasks = [t for t in (self._restart_task, self._branch_task, self._main_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._main_task = self._restart_task = self._branch_task = None
        self.main_active = False
        self.branch_active = False
        self.main_processing = False

    async def _restart_timer(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.cfg.main_restart_interval_sec)
            await self.graceful_restart()

    async def graceful_restart(self) -> None:
        """Signal the running pass to stop, wait for it to go idle, then start a fresh pass."""
        log.info("MAIN_RESTART │ requesting stop of current pass")
        self._stop_main = True
        while self.main_processing:
            await asyncio.sleep(self.cfg.restart_poll_interval_sec)

        cleared = len(self.failed_attempts)
        self.failed_attempts.clear()
        self._stop_main = False
        log.info("MAIN_RESTART │ idle, cleared %d failure counters", cleared)

        await asyncio.sleep(self.cfg.restart_delay_sec)
        if not self._stopped:
            self._main_task = asyncio.create_task(self.run_main_line(), name="crawler-main")

    # ── Main and branch lines ──

    async def run_main_line(self) -> int:
        """One backward pass. Returns the number of epochs reconstructed."""
        self.main_processing = True
        processed = 0
        try:
            current = await self.get_current_epoch()
            start = current - self.cfg.settling_epochs
            log.info("MAIN │ pass from epoch %d down to 1", start)
            for epoch in range(start, 0, -1):
                if self._stop_main or self._stopped:
                    log.info("MAIN │ stop requested at epoch %d", epoch)
                    break
                if await self.has_round(epoch):
                    continue
                if await self.process_epoch(epoch):
                    processed += 1
                await asyncio.sleep(self.cfg.main_epoch_delay_sec)
            else:
                log.info("MAIN │ pass complete, %d epochs reconstructed", processed)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("MAIN │ pass aborted")
            self.stats.errors += 1
        finally:
            self.main_processing = False
        return processed

    async def _branch_loop(self) -> None:
        await asyncio.sleep(self.cfg.branch_start_delay_sec)
        self.branch_active = True
        try:
            while not self._stopped:
                await self.run_branch_line()
                await asyncio.sleep(self.cfg.branch_interval_sec)
        finally:
            self.branch_active = False

    async def run_branch_line(self) -> int:
        """Fill gaps among the most recent settled epochs. Returns the number filled."""
        filled = 0
        try:
            current = await self.get_current_epoch()
            top = current - self.cfg.settling_epochs
            bottom = max(top - self.cfg.branch_recent_epochs, 0)
            for epoch in range(top, bottom, -1):
                if self._stopped:
                    break
                if await self.has_round(epoch):
                    continue
                log.info("BRANCH │ filling missing epoch %d", epoch)
                if await self.process_epoch(epoch):
                    filled += 1
                await asyncio.sleep(self.cfg.branch_epoch_delay_sec)
            if filled:
                log.info("BRANCH │ filled %d of the last %d epochs", filled, top - bottom)
            else:
                log.debug("BRANCH │ epochs %d..%d complete", bottom + 1, top)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("BRANCH │ check failed")
            self.stats.errors += 1
        return filled

    # ── Chain access ──

    async def _chain_call(self, fn: Callable[[], Any], label: str) -> Any:
        return await with_retry(
            lambda: asyncio.to_thread(fn),
            attempts=self.cfg.retry_attempts,
            base_delay=self.cfg.retry_base_delay_sec,
            limiter=self.limiter,
            label=label,
        )

    async def get_current_epoch(self) -> int:
        contract = self.manager.get_contract()
        return int(await self._chain_call(contract.functions.currentEpoch().call, "currentEpoch"))

    async def get_round_data(self, epoch: int) -> dict[str, Any]:
        contract = self.manager.get_contract()
        raw = await self._chain_call(contract.functions.rounds(epoch).call, f"rounds({epoch})")
        return dict(zip(ROUND_FIELDS, raw))

    async def get_block_timestamp(self, block_number: int) -> int:
        w3 = self.manager.get_http_provider()
        block = await self._chain_call(lambda: w3.eth.get_block(block_number), f"getBlock({block_number})")
        return int(block["timestamp"])

    async def find_block_by_timestamp(self, target_ts: int) -> int:
        """Binary search on [1, head]: exact match, else the closest-timestamp block probed."""
        w3 = self.manager.get_http_provider()
        head = int(await self._chain_call(lambda: w3.eth.block_number, "blockNumber"))
        lo, hi = 1, head
        closest, closest_diff = head, None
        while lo <= hi:
            mid = (lo + hi) // 2
            ts = await self.get_block_timestamp(mid)
            diff = abs(ts - target_ts)
            if closest_diff is None or diff < closest_diff:
                closest, closest_diff = mid, diff
            if ts == target_ts:
                return mid
            if ts < target_ts:
                lo = mid + 1
            else:
                hi = mid - 1
        return closest

    async def _get_logs(self, event_name: str, from_block: int, to_block: int) -> list:
        contract = self.manager.get_contract()
        event = getattr(contract.events, event_name)()
        return list(await self._chain_call(
            lambda: event.get_logs(from_block=from_block, to_block=to_block),
            f"{event_name}[{from_block}..{to_block}]",
        ))

    async def get_epoch_events(
        self, epoch: int, rnd: Round, from_block: int, to_block: int
    ) -> tuple[list[HistoricalBet], list[Claim]]:
        bull_logs, bear_logs, claim_logs = await asyncio.gather(
            *(self._get_logs(name, from_block, to_block) for name in BET_EVENTS),
            self._get_logs(CLAIM_EVENT, from_block, to_block),
        )
        block_ts: dict[int, str] = {}

        async def stamp(block_number: int) -> str:
            if block_number not in block_ts:
                ts = await self.get_block_timestamp(block_number)
                block_ts[block_number] = format_unix_timestamp(ts, self.cfg.timezone)
            return block_ts[block_number]

        bets: list[HistoricalBet] = []
        for direction, logs in ((Direction.UP, bull_logs), (Direction.DOWN, bear_logs)):
            for ev in logs:
                try:
                    if int(ev["args"]["epoch"]) != epoch:
                        continue
                    bets.append(HistoricalBet(
                        epoch=epoch,
                        bet_ts=await stamp(int(ev["blockNumber"])),
                        wallet_address=str(ev["args"]["sender"]).lower(),
                        bet_direction=direction,
                        amount=to_ether(ev["args"]["amount"]),
                        result=BetResult.WIN if direction == rnd.result else BetResult.LOSS,
                        tx_hash=Web3.to_hex(ev["transactionHash"]),
                    ))
                except (KeyError, TypeError, ValueError) as e:
                    log.warning("EVENT_SKIP │ epoch %d malformed %s event: %s", epoch, direction.value, e)

        claims: list[Claim] = []
        for ev in claim_logs:
            try:
                claims.append(Claim(
                    epoch=epoch,
                    claim_ts=await stamp(int(ev["blockNumber"])),
                    wallet_address=str(ev["args"]["sender"]).lower(),
                    claim_amount=to_ether(ev["args"]["amount"]),
                    bet_epoch=int(ev["args"]["epoch"]),
                ))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("EVENT_SKIP │ epoch %d malformed Claim event: %s", epoch, e)
        return bets, claims

    # ── Reconstruction ──

    def build_round(self, data: dict[str, Any]) -> Round:
        tz = self.cfg.timezone
        lock_price = to_price(data["lockPrice"])
        close_price = to_price(data["closePrice"])
        total = to_ether(data["totalAmount"])
        up = to_ether(data["bullAmount"])
        down = to_ether(data["bearAmount"])
        up_payout, down_payout = calculate_payouts(total, up, down, self.cfg.treasury_fee_rate)
        return Round(
            epoch=int(data["epoch"]),
            start_ts=format_unix_timestamp(int(data["startTimestamp"]), tz),
            lock_ts=format_unix_timestamp(int(data["lockTimestamp"]), tz),
            close_ts=format_unix_timestamp(int(data["closeTimestamp"]), tz),
            start_unix=int(data["startTimestamp"]),
            lock_unix=int(data["lockTimestamp"]),
            close_unix=int(data["closeTimestamp"]),
            lock_price=lock_price,
            close_price=close_price,
            result=round_result(lock_price, close_price),
            total_amount=total,
            up_amount=up,
            down_amount=down,
            up_payout=up_payout,
            down_payout=down_payout,
        )

    @staticmethod
    def validate_epoch_data(epoch: int, rnd: Round | None, bets: list[HistoricalBet], claims: list[Claim]) -> None:
        """Raise IncompleteEpochError unless the epoch has round data, both sides bet, and a claim."""
        if rnd is None or not rnd.epoch:
            raise IncompleteEpochError(epoch, "round data missing")
        directions = {b.bet_direction for b in bets}
        if Direction.UP not in directions or Direction.DOWN not in directions:
            raise IncompleteEpochError(epoch, "missing UP or DOWN bets")
        if not claims:
            raise IncompleteEpochError(epoch, "no claims")

    async def has_round(self, epoch: int) -> bool:
        result = await self.manager.execute_query(sql.select_round_epoch(epoch))
        return bool(result.rows)

    async def should_skip_epoch(self, epoch: int) -> bool:
        result = await self.manager.execute_query(sql.select_failure_count(epoch))
        return bool(result.rows) and result.rows[0]["failure_count"] >= self.cfg.max_epoch_failures

    async def save_epoch_data(self, rnd: Round, bets: list[HistoricalBet], claims: list[Claim]) -> None:
        dialect = self.manager.dialect
        await self.manager.execute_transaction([
            sql.insert_round(dialect, rnd),
            *sql.insert_bets(dialect, bets),
            *sql.insert_claims(dialect, claims),
        ])

    async def process_epoch(self, epoch: int) -> bool:
        """Reconstruct one epoch. Returns True only when it was persisted."""
        try:
            if await self.should_skip_epoch(epoch):
                log.info("SKIP │ epoch %d quarantined", epoch)
                return False

            data = await self.get_round_data(epoch)
            if int(data.get("closeTimestamp") or 0) == 0:
                log.info("SKIP │ epoch %d not finished", epoch)
                return False

            rnd = self.build_round(data)
            next_data = await self.get_round_data(epoch + 1)
            next_start = int(next_data.get("startTimestamp") or 0)
            if next_start == 0:
                raise EpochReconstructionError(epoch, "next epoch has no start timestamp")

            from_block = await self.find_block_by_timestamp(rnd.start_unix)
            to_block = await self.find_block_by_timestamp(next_start)
            bets, claims = await self.get_epoch_events(epoch, rnd, from_block, to_block)
            self.validate_epoch_data(epoch, rnd, bets, claims)
            await self.save_epoch_data(rnd, bets, claims)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.errors += 1
            log.warning("EPOCH_FAIL │ epoch %d: %s", epoch, e)
            await self.handle_epoch_failure(epoch, str(e))
            return False

        try:
            await self.manager.execute_query(sql.delete_realbets(epoch))
        except Exception as e:
            log.warning("REALBET_CLEANUP │ epoch %d saved but realbet rows kept: %s", epoch, e)
        self.failed_attempts.pop(epoch, None)
        self.stats.rounds_processed += 1
        self.stats.bets_processed += len(bets)
        self.stats.claims_processed += len(claims)
        log.info(
            "%sEPOCH_DONE%s │ %d %s bets=%d claims=%d",
            C_GREEN, C_RESET, epoch, rnd.result.value, len(bets), len(claims),
        )
        return True

    async def handle_epoch_failure(self, epoch: int, reason: str) -> None:
        attempts = self.failed_attempts.get(epoch, 0) + 1
        self.failed_attempts[epoch] = attempts
        limit = self.cfg.max_epoch_failures
        try:
            if attempts >= limit:
                await self.manager.execute_query(
                    sql.record_failed_epoch(self.manager.dialect, FailedEpoch(epoch, reason, attempts))
                )
                self.failed_attempts.pop(epoch, None)
                self.stats.quarantined += 1
                log.warning("%sQUARANTINE%s │ epoch %d failed %d times: %s", C_YELLOW, C_RESET, epoch, attempts, reason)
            else:
                await self.manager.execute_query(sql.delete_round(epoch))
                log.info("RETRY_LATER │ epoch %d attempt %d/%d", epoch, attempts, limit)
        except Exception:
            log.exception("EPOCH_FAIL │ could not record failure for epoch %d", epoch)

    def get_stats(self) -> dict[str, Any]:
        return {
            "rounds_processed": self.stats.rounds_processed,
            "bets_processed": self.stats.bets_processed,
            "claims_processed": self.stats.claims_processed,
            "errors": self.stats.errors,
            "quarantined": self.stats.quarantined,
            "main_line_active": self.main_active,
            "branch_line_active": self.branch_active,
            "main_line_processing": self.main_processing,
            "failed_attempts": len(self.failed_attempts),
        }
