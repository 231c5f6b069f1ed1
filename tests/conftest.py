"""Shared fixtures for indexer tests."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from prediction_indexer.config import IndexerConfig
from prediction_indexer.connection import ConnectionManager
from prediction_indexer.persistence.db import create_tables

CONTRACT = "0x" + "11" * 20
WALLET_A = "0x" + "aa" * 20
WALLET_B = "0x" + "bb" * 20
WALLET_C = "0x" + "cc" * 20

# Block n has timestamp GENESIS_TS + 3n
GENESIS_TS = 1_699_999_000
HEAD_BLOCK = 2_000
ROUND_START = 1_700_000_000
ETHER = 10**18


def block_ts(n: int) -> int:
    return GENESIS_TS + 3 * n


def round_tuple(epoch: int, start: int, close: int, lock_price: int, close_price: int,
                bull: int, bear: int) -> tuple:
    return (
        epoch, start, start + 300, close, lock_price, close_price,
        1, 2, bull + bear, bull, bear, 0, 0, True,
    )


def bet_log(sender: str, epoch: int, amount: int, block: int, tx_byte: str) -> dict:
    return {
        "args": {"sender": sender, "epoch": epoch, "amount": amount},
        "blockNumber": block,
        "transactionHash": bytes.fromhex(tx_byte * 32),
    }


@pytest.fixture
def cfg(tmp_path) -> IndexerConfig:
    return IndexerConfig(
        database_url=f"sqlite:///{tmp_path / 'indexer.db'}",
        db_retry_delay_sec=0.0,
        rpc_http_url="http://node-a",
        rpc_backup_urls=("http://node-b",),
        rpc_ws_url="ws://node-a",
        rpc_ws_backup_urls=("ws://node-b",),
        contract_address=CONTRACT,
        rpc_retry_delay_sec=0.0,
        ws_reconnect_delay_sec=0.0,
        ws_reconnect_max_delay_sec=0.0,
        treasury_fee_rate=Decimal("0.03"),
        retry_base_delay_sec=0.0,
        main_epoch_delay_sec=0.0,
        restart_poll_interval_sec=0.0,
        restart_delay_sec=0.0,
        branch_epoch_delay_sec=0.0,
        reattach_retry_sec=0.0,
        timezone="UTC",
    )


@pytest.fixture(autouse=True)
def _release_manager_slot():
    yield
    ConnectionManager._instance = None


@pytest.fixture
def manager(cfg) -> ConnectionManager:
    """Manager with a live SQLite pool and no chain connections."""
    m = ConnectionManager(cfg)
    m._init_database()
    create_tables(m._engine)
    yield m
    if m._engine is not None:
        m._engine.dispose()


@pytest.fixture
def epoch_100_chain():
    """Fake web3 + contract for a finished epoch 100: two UP bets, one DOWN bet, one claim."""
    w3 = MagicMock()
    w3.eth.block_number = HEAD_BLOCK
    w3.eth.get_block.side_effect = lambda n: {"number": n, "timestamp": block_ts(n)}

    rounds = {
        100: round_tuple(100, ROUND_START, ROUND_START + 600, 30_000 * 10**8, 30_100 * 10**8,
                         3 * ETHER, 1 * ETHER),
        101: round_tuple(101, ROUND_START + 300, 0, 0, 0, 0, 0),
    }
    contract = MagicMock()
    contract.functions.currentEpoch.return_value.call.return_value = 103
    contract.functions.rounds.side_effect = lambda e: MagicMock(
        call=MagicMock(return_value=rounds.get(e, round_tuple(e, 0, 0, 0, 0, 0, 0)))
    )
    contract.events.BetBull.return_value.get_logs.return_value = [
        bet_log(WALLET_A.upper().replace("0X", "0x"), 100, 2 * ETHER, 340, "a1"),
        bet_log(WALLET_B, 100, 1 * ETHER, 341, "b1"),
        bet_log(WALLET_C, 101, 5 * ETHER, 342, "c9"),
    ]
    contract.events.BetBear.return_value.get_logs.return_value = [
        bet_log(WALLET_C, 100, 1 * ETHER, 342, "c1"),
    ]
    contract.events.Claim.return_value.get_logs.return_value = [
        bet_log(WALLET_A, 98, ETHER // 2, 350, "d1"),
    ]
    return w3, contract, rounds


def attach_chain(manager: ConnectionManager, w3, contract) -> None:
    manager._w3 = w3
    manager._contract = contract
    manager._set_status(http_connected=True)
