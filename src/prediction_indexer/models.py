"""Data structures for rounds, bets, claims and connection health."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional

ZERO = Decimal("0")
PAYOUT_QUANT = Decimal("0.0001")

# ANSI colors for log highlights
C_GREEN = "\033[32m"
C_RED = "\033[31m"
C_YELLOW = "\033[33m"
C_RESET = "\033[0m"


class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"


class BetResult(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"


def round_result(lock_price: Decimal, close_price: Decimal) -> Direction:
    """UP only on a strict rise; a flat close counts as DOWN."""
    return Direction.UP if close_price > lock_price else Direction.DOWN


def calculate_payouts(
    total_amount: Decimal,
    up_amount: Decimal,
    down_amount: Decimal,
    fee_rate: Decimal,
) -> tuple[Decimal, Decimal]:
    """Payout multiplier per side after the treasury fee. Empty side pays 0."""
    total_after_fee = total_amount * (Decimal("1") - fee_rate)
    up = (total_after_fee / up_amount).quantize(PAYOUT_QUANT, ROUND_HALF_UP) if up_amount > 0 else ZERO
    down = (total_after_fee / down_amount).quantize(PAYOUT_QUANT, ROUND_HALF_UP) if down_amount > 0 else ZERO
    return up, down


@dataclass(frozen=True)
class Round:
    epoch: int
    start_ts: str
    lock_ts: str
    close_ts: str
    start_unix: int
    lock_unix: int
    close_unix: int
    lock_price: Decimal
    close_price: Decimal
    result: Direction
    total_amount: Decimal
    up_amount: Decimal
    down_amount: Decimal
    up_payout: Decimal
    down_payout: Decimal

    def as_row(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch,
            "start_ts": self.start_ts,
            "lock_ts": self.lock_ts,
            "close_ts": self.close_ts,
            "start_unix": self.start_unix,
            "lock_unix": self.lock_unix,
            "close_unix": self.close_unix,
            "lock_price": self.lock_price,
            "close_price": self.close_price,
            "result": self.result.value,
            "total_amount": self.total_amount,
            "up_amount": self.up_amount,
            "down_amount": self.down_amount,
            "up_payout": self.up_payout,
            "down_payout": self.down_payout,
        }


@dataclass(frozen=True)
class HistoricalBet:
    epoch: int
    bet_ts: str
    wallet_address: str  # lower-cased
    bet_direction: Direction
    amount: Decimal
    result: Optional[BetResult]
    tx_hash: str

    def as_row(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch,
            "bet_ts": self.bet_ts,
            "wallet_address": self.wallet_address,
            "bet_direction": self.bet_direction.value,
            "amount": self.amount,
            "result": self.result.value if self.result else None,
            "tx_hash": self.tx_hash,
        }


@dataclass(frozen=True)
class Claim:
    epoch: int  # epoch whose block range contained the claim
    claim_ts: str
    wallet_address: str
    claim_amount: Decimal
    bet_epoch: int  # epoch the claimed bet belongs to

    def as_row(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch,
            "claim_ts": self.claim_ts,
            "wallet_address": self.wallet_address,
            "claim_amount": self.claim_amount,
            "bet_epoch": self.bet_epoch,
        }


@dataclass(frozen=True)
class InFlightBet:
    """A bet on the currently open round, as seen on the live stream."""

    epoch: int
    bet_ts: str
    wallet_address: str
    bet_direction: Direction
    amount: Decimal
    tx_hash: str = ""
    block_number: int = 0

    def as_row(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch,
            "bet_ts": self.bet_ts,
            "wallet_address": self.wallet_address,
            "bet_direction": self.bet_direction.value,
            "amount": self.amount,
        }

    def as_payload(self) -> dict[str, Any]:
        return {
            "epoch": str(self.epoch),
            "bet_ts": self.bet_ts,
            "wallet_address": self.wallet_address,
            "bet_direction": self.bet_direction.value,
            "amount": str(self.amount),
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
        }


@dataclass(frozen=True)
class FailedEpoch:
    epoch: int
    error_message: str
    failure_count: int
    last_attempt_ts: Any = None


@dataclass(frozen=True)
class SuspicionCheck:
    is_suspicious: bool
    flags: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {"is_suspicious": self.is_suspicious, "flags": list(self.flags)}


@dataclass
class ConnectionStatus:
    """Process-wide connection health. Owned and mutated by ConnectionManager only."""

    db_connected: bool = False
    http_connected: bool = False
    ws_connected: bool = False
    last_health_check: Optional[str] = None
    reconnect_attempts: int = 0
    active_ws_node_index: int = 0
    active_http_node_index: int = 0
    ws_last_activity: Optional[float] = None  # time.monotonic()
    ws_connection_started: Optional[float] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "db_connected": self.db_connected,
            "http_connected": self.http_connected,
            "ws_connected": self.ws_connected,
            "last_health_check": self.last_health_check,
            "reconnect_attempts": self.reconnect_attempts,
            "active_ws_node_index": self.active_ws_node_index,
            "active_http_node_index": self.active_http_node_index,
            "ws_last_activity": self.ws_last_activity,
            "ws_connection_started": self.ws_connection_started,
        }


@dataclass
class CrawlerStats:
    rounds_processed: int = 0
    bets_processed: int = 0
    claims_processed: int = 0
    errors: int = 0
    quarantined: int = 0
