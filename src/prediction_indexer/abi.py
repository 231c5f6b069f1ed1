"""Minimal prediction-contract ABI and unit conversions for its amounts and prices.

A full ABI can be supplied through ``abi_path`` in config; this one is used otherwise.
"""

from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path
from typing import Any

from web3 import Web3

# Oracle prices carry 8 decimals, stake amounts 18
PRICE_DECIMALS = 8
PRICE_SCALE = Decimal(10) ** PRICE_DECIMALS

BET_EVENTS = ("BetBull", "BetBear")
ROUND_EVENTS = ("StartRound", "LockRound", "EndRound")
CLAIM_EVENT = "Claim"


def _bet_event(name: str) -> dict[str, Any]:
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "sender", "type": "address"},
            {"indexed": True, "name": "epoch", "type": "uint256"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
    }


def _settle_event(name: str) -> dict[str, Any]:
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [
            {"indexed": True, "name": "epoch", "type": "uint256"},
            {"indexed": True, "name": "roundId", "type": "uint256"},
            {"indexed": False, "name": "price", "type": "int256"},
        ],
    }


PREDICTION_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "currentEpoch",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "", "type": "uint256"}],
        "name": "rounds",
        "outputs": [
            {"name": "epoch", "type": "uint256"},
            {"name": "startTimestamp", "type": "uint256"},
            {"name": "lockTimestamp", "type": "uint256"},
            {"name": "closeTimestamp", "type": "uint256"},
            {"name": "lockPrice", "type": "int256"},
            {"name": "closePrice", "type": "int256"},
            {"name": "lockOracleId", "type": "uint256"},
            {"name": "closeOracleId", "type": "uint256"},
            {"name": "totalAmount", "type": "uint256"},
            {"name": "bullAmount", "type": "uint256"},
            {"name": "bearAmount", "type": "uint256"},
            {"name": "rewardBaseCalAmount", "type": "uint256"},
            {"name": "rewardAmount", "type": "uint256"},
            {"name": "oracleCalled", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    _bet_event("BetBull"),
    _bet_event("BetBear"),
    _bet_event(CLAIM_EVENT),
    {
        "anonymous": False,
        "name": "StartRound",
        "type": "event",
        "inputs": [{"indexed": True, "name": "epoch", "type": "uint256"}],
    },
    _settle_event("LockRound"),
    _settle_event("EndRound"),
]


def to_ether(wei: int) -> Decimal:
    return Decimal(Web3.from_wei(int(wei), "ether"))


def to_price(raw: int) -> Decimal:
    return Decimal(int(raw)) / PRICE_SCALE


def load_abi(path: str = "") -> list[dict[str, Any]]:
    """Return the ABI at *path* (a bare list or a Hardhat-style {"abi": [...]}) or the bundled one."""
    if not path:
        return PREDICTION_ABI
    with open(Path(path)) as f:
        data = json.load(f)
    return data["abi"] if isinstance(data, dict) else data
