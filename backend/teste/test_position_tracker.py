from __future__ import annotations

import asyncio

import pytest

from conftest import FakeQuotes, open_position
from tradecore.services.execution.position_tracker import PositionTracker


def test_refresh_prices_updates_pnl(positions):
    positions.upsert(open_position("AAPL"))
    positions.upsert(open_position("MSFT", entry_price=200.0, shares=5))

    updated = asyncio.run(PositionTracker(positions).refresh_prices(FakeQuotes({"AAPL": 110.0, "MSFT": 190.0})))

    assert updated == 2
    aapl = positions.get("AAPL")
    assert aapl.current_price == 110.0
    assert aapl.pnl == pytest.approx(1000.0)
    assert aapl.pnl_pct == pytest.approx(0.10)
    assert positions.get("MSFT").pnl == pytest.approx(-50.0)


def test_refresh_prices_skips_failed_quotes(positions):
    positions.upsert(open_position("AAPL"))
    positions.upsert(open_position("MSFT", current_price=300.0))

    updated = asyncio.run(PositionTracker(positions).refresh_prices(FakeQuotes({"AAPL": 101.0})))

    assert updated == 1
    assert positions.get("MSFT").current_price == 300.0


def test_trailing_stop_moves_up_only(positions):
    positions.upsert(open_position(current_price=120.0))
    tracker = PositionTracker(positions)

    assert tracker.update_trailing_stops() == 1
    assert positions.get("AAPL").trailing_stop == pytest.approx(114.0)

    positions.update("AAPL", current_price=110.0)
    assert tracker.update_trailing_stops() == 0
    assert positions.get("AAPL").trailing_stop == pytest.approx(114.0)


def test_trailing_stop_ignores_losing_positions(positions):
    positions.upsert(open_position(current_price=97.0))
    assert PositionTracker(positions).update_trailing_stops() == 0
    assert positions.get("AAPL").trailing_stop is None


def test_exit_conditions(positions):
    positions.upsert(open_position("STOP", current_price=94.0))
    positions.upsert(open_position("TRAIL", current_price=104.0, trailing_stop=105.0))
    positions.upsert(open_position("TP", current_price=111.0))
    positions.upsert(open_position("HOLD", current_price=101.0))
    positions.upsert(open_position("NOQUOTE", current_price=None))

    result = PositionTracker(positions).check_exit_conditions()

    assert sorted(result.positions_to_close) == ["STOP", "TP", "TRAIL"]
    assert result.exit_reasons["STOP"] == "Stop-loss triggered"
    assert result.exit_reasons["TRAIL"] == "Stop-loss triggered"
    assert result.exit_reasons["TP"] == "Take-profit triggered"
