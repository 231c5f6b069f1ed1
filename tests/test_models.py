"""Tests for models.py: outcome and payout arithmetic."""

from decimal import Decimal

from prediction_indexer.models import ConnectionStatus, Direction, InFlightBet, calculate_payouts, round_result

FEE = Decimal("0.03")


class TestRoundResult:
    def test_rise_is_up(self):
        assert round_result(Decimal("100"), Decimal("100.00000001")) is Direction.UP

    def test_flat_is_down(self):
        assert round_result(Decimal("100"), Decimal("100")) is Direction.DOWN

    def test_fall_is_down(self):
        assert round_result(Decimal("100"), Decimal("99")) is Direction.DOWN


class TestPayouts:
    def test_four_to_one_pool(self):
        up, down = calculate_payouts(Decimal("4"), Decimal("3"), Decimal("1"), FEE)
        assert up == Decimal("1.2933")
        assert down == Decimal("3.8800")

    def test_empty_side_pays_zero(self):
        up, down = calculate_payouts(Decimal("5"), Decimal("5"), Decimal("0"), FEE)
        assert up == Decimal("0.9700")
        assert down == Decimal("0")

    def test_rounds_half_up(self):
        up, _ = calculate_payouts(Decimal("1"), Decimal("32"), Decimal("1"), Decimal("0"))
        assert up == Decimal("0.0313")


def test_inflight_payload_uses_strings():
    bet = InFlightBet(42, "2024-01-01 00:00:00", "0xabc", Direction.DOWN, Decimal("0.25"), "0xdead", 77)
    payload = bet.as_payload()
    assert payload["epoch"] == "42"
    assert payload["amount"] == "0.25"
    assert payload["bet_direction"] == "DOWN"
    assert payload["block_number"] == 77
    assert "tx_hash" not in bet.as_row()


def test_connection_status_dict_has_all_fields():
    assert set(ConnectionStatus().as_dict()) == {
        "db_connected", "http_connected", "ws_connected", "last_health_check",
        "reconnect_attempts", "active_ws_node_index", "active_http_node_index",
        "ws_last_activity", "ws_connection_started",
    }
