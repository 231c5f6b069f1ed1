"""Tests for listener.py: dedup, broadcast-before-persist, round events, reattach."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from conftest import CONTRACT, ETHER, WALLET_A, bet_log
from prediction_indexer.errors import ConnectionUnavailableError
from prediction_indexer.listener import RealtimeListener
from prediction_indexer.models import Direction, InFlightBet, SuspicionCheck
from prediction_indexer.persistence.schema import realbet


def _hub():
    hub = MagicMock()
    hub.broadcast = AsyncMock(return_value=1)
    hub.count = 2
    return hub


class TestBetHandling:
    def test_duplicate_bet_broadcast_and_persisted_once(self, manager):
        hub = _hub()
        listener = RealtimeListener(manager, hub)

        async def scenario():
            worker = asyncio.create_task(listener._persist_worker())
            first = await listener.handle_bet_event(
                bet_log(WALLET_A, 200, 2 * ETHER, 900, "e1"), direction=Direction.UP)
            second = await listener.handle_bet_event(
                bet_log(WALLET_A, 200, 7 * ETHER, 901, "e2"), direction=Direction.DOWN)
            await listener.drain()
            worker.cancel()
            return first, second

        first, second = asyncio.run(scenario())
        assert (first, second) == (True, False)
        hub.broadcast.assert_awaited_once()

        message = hub.broadcast.await_args.args[0]
        assert message["channel"] == "new_bet_data"
        data = message["data"]
        assert data["epoch"] == "200"
        assert data["wallet_address"] == WALLET_A
        assert data["bet_direction"] == "UP"
        assert data["amount"] == "2"
        assert data["tx_hash"] == "0x" + "e1" * 32
        assert data["block_number"] == 900
        assert data["suspicious"] == {"is_suspicious": False, "flags": []}

        with manager._engine.connect() as conn:
            rows = [dict(r._mapping) for r in conn.execute(select(realbet))]
        assert len(rows) == 1
        assert rows[0]["bet_direction"] == "UP"
        assert rows[0]["amount"] == Decimal("2")

    def test_same_wallet_new_epoch_is_processed(self, manager):
        hub = _hub()
        listener = RealtimeListener(manager, hub)

        async def scenario():
            await listener.handle_bet_event(bet_log(WALLET_A, 200, ETHER, 1, "01"), direction=Direction.UP)
            await listener.handle_bet_event(bet_log(WALLET_A, 201, ETHER, 2, "02"), direction=Direction.UP)

        asyncio.run(scenario())
        assert hub.broadcast.await_count == 2
        assert listener.get_status()["pending_writes"] == 2

    def test_broadcast_precedes_persistence(self, manager):
        order = []
        hub = _hub()
        hub.broadcast.side_effect = lambda msg: order.append("broadcast")
        listener = RealtimeListener(manager, hub)
        listener.persist_bet = AsyncMock(side_effect=lambda bet, check: order.append("persist"))

        async def scenario():
            worker = asyncio.create_task(listener._persist_worker())
            await listener.handle_bet_event(bet_log(WALLET_A, 5, ETHER, 1, "03"), direction=Direction.UP)
            await listener.drain()
            worker.cancel()

        asyncio.run(scenario())
        assert order == ["broadcast", "persist"]

    def test_unique_violation_is_swallowed(self, cfg):
        manager = MagicMock()
        manager.cfg = cfg
        manager.dialect = "sqlite"
        manager.execute_query = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))
        listener = RealtimeListener(manager, _hub())
        bet = InFlightBet(1, "t", WALLET_A, Direction.UP, Decimal("1"))

        asyncio.run(listener.persist_bet(bet, SuspicionCheck(False)))
        manager.execute_query.assert_awaited_once()

    def test_other_write_errors_are_logged_not_raised(self, cfg):
        manager = MagicMock()
        manager.cfg = cfg
        manager.dialect = "sqlite"
        manager.execute_query = AsyncMock(side_effect=RuntimeError("db gone"))
        listener = RealtimeListener(manager, _hub())
        bet = InFlightBet(1, "t", WALLET_A, Direction.UP, Decimal("1"))

        asyncio.run(listener.persist_bet(bet, SuspicionCheck(True, ("flag",))))


class TestRoundEvents:
    def test_round_event_payload(self, manager):
        hub = _hub()
        listener = RealtimeListener(manager, hub)
        asyncio.run(listener.handle_round_event({"args": {"epoch": 300, "roundId": 9, "price": 1}}, kind="lock"))
        hub.broadcast.assert_awaited_once_with(
            {"channel": "round_event", "type": "lock", "data": {"epoch": "300"}}
        )


class TestReattach:
    def _binding(self):
        binding = MagicMock()
        binding.address = CONTRACT
        binding.subscribe = AsyncMock(side_effect=lambda name, handler: f"sub-{name}")
        binding.unsubscribe_all = AsyncMock(return_value=5)
        return binding

    def test_subscribes_all_five_events(self, manager):
        binding = self._binding()
        manager.get_websocket_contract = MagicMock(return_value=binding)
        listener = RealtimeListener(manager, _hub())

        assert asyncio.run(listener.reattach()) is True
        names = [c.args[0] for c in binding.subscribe.await_args_list]
        assert names == ["BetBull", "BetBear", "StartRound", "LockRound", "EndRound"]

    def test_reattach_drops_previous_binding(self, manager):
        old, new = self._binding(), self._binding()
        manager.get_websocket_contract = MagicMock(side_effect=[old, new])
        listener = RealtimeListener(manager, _hub())

        async def scenario():
            await listener.reattach()
            await listener.reattach()

        asyncio.run(scenario())
        old.unsubscribe_all.assert_awaited_once()
        assert listener.contract is new

    def test_retries_until_binding_available(self, manager):
        binding = self._binding()
        manager.get_websocket_contract = MagicMock(
            side_effect=[ConnectionUnavailableError("down"), ConnectionUnavailableError("down"), binding]
        )
        listener = RealtimeListener(manager, _hub())

        async def scenario():
            ok = await listener.reattach()
            await listener._reattach_task
            return ok

        assert asyncio.run(scenario()) is False
        assert listener.contract is binding
        assert manager.get_websocket_contract.call_count == 3

    @staticmethod
    def _tracked_binding(live: set):
        binding = MagicMock()
        binding.address = CONTRACT

        async def subscribe(name, handler):
            await asyncio.sleep(0)
            live.add((id(binding), name))

        async def unsubscribe_all():
            mine = {sub for sub in live if sub[0] == id(binding)}
            live.difference_update(mine)
            return len(mine)

        binding.subscribe = AsyncMock(side_effect=subscribe)
        binding.unsubscribe_all = AsyncMock(side_effect=unsubscribe_all)
        return binding

    def test_concurrent_binds_leave_one_live_set(self, manager):
        live: set = set()
        manager.get_websocket_contract = MagicMock(side_effect=lambda: self._tracked_binding(live))
        listener = RealtimeListener(manager, _hub())

        async def scenario():
            await asyncio.gather(listener.setup_events(), listener.setup_events())
            remaining, kept = set(live), listener.contract
            await listener.stop()
            return remaining, kept

        remaining, kept = asyncio.run(scenario())
        assert len(remaining) == 5
        assert {owner for owner, _ in remaining} == {id(kept)}
        assert live == set()

    def test_reconnect_callback_supersedes_pending_retry(self, manager):
        live: set = set()
        bindings = iter([ConnectionUnavailableError("down")])

        def next_binding():
            failure = next(bindings, None)
            if failure is not None:
                raise failure
            return self._tracked_binding(live)

        manager.get_websocket_contract = MagicMock(side_effect=next_binding)
        listener = RealtimeListener(manager, _hub())

        async def scenario():
            assert await listener.reattach() is False
            pending = listener._reattach_task
            assert await listener.reattach() is True
            await asyncio.gather(pending, return_exceptions=True)
            bound = len(live)
            await listener.stop()
            return pending, bound

        pending, bound = asyncio.run(scenario())
        assert pending.cancelled()
        assert bound == 5
        assert live == set()
        assert manager.get_websocket_contract.call_count == 2

    def test_start_registers_reconnect_callback(self, manager):
        manager.get_websocket_contract = MagicMock(return_value=self._binding())
        listener = RealtimeListener(manager, _hub())

        async def scenario():
            await listener.start()
            registered = manager._on_reconnect
            await listener.stop()
            return registered

        assert asyncio.run(scenario()) == listener.reattach
        assert manager._on_reconnect is None


class TestStatus:
    def test_status_fields(self, manager):
        listener = RealtimeListener(manager, _hub())
        status = listener.get_status()
        assert status == {
            "is_connected": False,
            "connected_clients": 2,
            "has_websocket_server": True,
            "processed_bets_count": 0,
            "contract_address": CONTRACT,
            "pending_writes": 0,
        }
