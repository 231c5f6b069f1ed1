"""Tests for stream.py: log normalization, subscription dispatch, event decoding."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from hexbytes import HexBytes
from web3 import Web3

from conftest import CONTRACT
from prediction_indexer.abi import PREDICTION_ABI
from prediction_indexer.stream import StreamConnection, StreamingContract, event_topic, normalize_log

SENDER = "0x" + "ab" * 20
BET_BULL_ABI = next(e for e in PREDICTION_ABI if e.get("name") == "BetBull")


def _raw_bet_log(epoch: int = 100, amount: int = 2 * 10**18, removed: bool = False) -> dict:
    return {
        "address": CONTRACT,
        "topics": [
            event_topic(BET_BULL_ABI),
            "0x" + "00" * 12 + SENDER[2:],
            "0x" + format(epoch, "064x"),
        ],
        "data": "0x" + format(amount, "064x"),
        "blockNumber": "0x1f4",
        "blockHash": "0x" + "22" * 32,
        "transactionHash": "0x" + "33" * 32,
        "transactionIndex": "0x3",
        "logIndex": "0x7",
        "removed": removed,
    }


def test_event_topic_is_signature_hash():
    expected = Web3.to_hex(Web3.keccak(text="BetBull(address,uint256,uint256)"))
    assert event_topic(BET_BULL_ABI) == expected


def test_normalize_log_converts_hex_fields():
    entry = normalize_log(_raw_bet_log())
    assert entry["blockNumber"] == 500
    assert entry["logIndex"] == 7
    assert entry["transactionIndex"] == 3
    assert isinstance(entry["topics"][0], HexBytes)
    assert isinstance(entry["data"], HexBytes)
    assert entry["address"] == Web3.to_checksum_address(CONTRACT)


def test_subscription_response_registers_handler_before_notifications():
    async def scenario():
        stream = StreamConnection("ws://node")
        handler = AsyncMock()
        future = asyncio.get_running_loop().create_future()
        stream._pending[1] = future
        stream._pending_handlers[1] = handler

        await stream._dispatch({"jsonrpc": "2.0", "id": 1, "result": "0xsub"})
        await stream._dispatch({
            "jsonrpc": "2.0",
            "method": "eth_subscription",
            "params": {"subscription": "0xsub", "result": {"n": 1}},
        })
        await stream._dispatch({
            "jsonrpc": "2.0",
            "method": "eth_subscription",
            "params": {"subscription": "0xother", "result": {"n": 2}},
        })
        return future.result(), handler, stream

    result, handler, stream = asyncio.run(scenario())
    assert result == "0xsub"
    handler.assert_awaited_once_with({"n": 1})
    assert stream.subscription_count == 1


def test_rpc_error_fails_request():
    async def scenario():
        stream = StreamConnection("ws://node")
        future = asyncio.get_running_loop().create_future()
        stream._pending[4] = future
        await stream._dispatch({"jsonrpc": "2.0", "id": 4, "error": {"code": -32000, "message": "nope"}})
        return future

    future = asyncio.run(scenario())
    assert isinstance(future.exception(), RuntimeError)


def test_closed_stream_is_not_open():
    stream = StreamConnection("ws://node")
    assert stream.is_open is False


class TestStreamingContract:
    def _binding(self):
        w3 = Web3(Web3.HTTPProvider("http://localhost:8545"))
        contract = w3.eth.contract(address=Web3.to_checksum_address(CONTRACT), abi=PREDICTION_ABI)
        stream = MagicMock()
        stream.subscribe_logs = AsyncMock(return_value="0xsub")
        stream.unsubscribe = AsyncMock(return_value=True)
        return StreamingContract(stream, contract), stream

    def test_subscribe_filters_by_address_and_topic(self):
        binding, stream = self._binding()
        sub_id = asyncio.run(binding.subscribe("BetBull", AsyncMock()))
        assert sub_id == "0xsub"
        address, topics, _ = stream.subscribe_logs.await_args.args
        assert address == Web3.to_checksum_address(CONTRACT)
        assert topics == [event_topic(BET_BULL_ABI)]

    def test_logs_are_decoded_for_handler(self):
        binding, stream = self._binding()
        handler = AsyncMock()

        async def scenario():
            await binding.subscribe("BetBull", handler)
            on_log = stream.subscribe_logs.await_args.args[2]
            await on_log(_raw_bet_log())

        asyncio.run(scenario())
        event = handler.await_args.args[0]
        assert event["args"]["sender"].lower() == SENDER
        assert event["args"]["epoch"] == 100
        assert event["args"]["amount"] == 2 * 10**18
        assert event["blockNumber"] == 500

    def test_removed_and_undecodable_logs_are_dropped(self):
        binding, stream = self._binding()
        handler = AsyncMock()

        async def scenario():
            await binding.subscribe("BetBull", handler)
            on_log = stream.subscribe_logs.await_args.args[2]
            await on_log(_raw_bet_log(removed=True))
            broken = _raw_bet_log()
            broken["data"] = "0x"
            await on_log(broken)

        asyncio.run(scenario())
        handler.assert_not_awaited()

    def test_unsubscribe_all(self):
        binding, stream = self._binding()

        async def scenario():
            await binding.subscribe("BetBull", AsyncMock())
            return await binding.unsubscribe_all()

        assert asyncio.run(scenario()) == 1
        stream.unsubscribe.assert_awaited_once_with("0xsub")
