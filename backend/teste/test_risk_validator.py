from __future__ import annotations

import pytest

from conftest import closed_trade
from tradecore.infrastructure.utils.config import RiskConfig
from tradecore.models.trade_models import PortfolioState, TradeProposal
from tradecore.services.risk.risk_validator import RiskValidator


def _portfolio(**kwargs) -> PortfolioState:
    values = dict(cash_available=10_000.0, portfolio_value=100_000.0, open_positions=1, peak_value=100_000.0)
    values.update(kwargs)
    return PortfolioState(**values)


def _proposal(**kwargs) -> TradeProposal:
    values = dict(symbol="AAPL", side="BUY", shares=10, price=100.0, stop_loss_pct=0.05, position_size_pct=0.01)
    values.update(kwargs)
    return TradeProposal(**values)


class BrokenLockStore:
    def is_locked(self, symbol, side=None):
        raise RuntimeError("database is locked")


@pytest.fixture
def validator(lock_store, trades):
    return RiskValidator(RiskConfig(), lock_store, trades)


def test_valid_buy_allowed(validator):
    result = validator.validate(_proposal(), _portfolio())
    assert result.allowed is True
    assert result.reason is None


def test_locked_pair_rejected_regardless_of_portfolio(validator, lock_store):
    lock_store.lock("AAPL", 30, "cooldown")

    for side in ("BUY", "SELL"):
        result = validator.validate(_proposal(side=side), _portfolio())
        assert result.allowed is False
        assert result.reason == "Pair locked: cooldown"


@pytest.mark.parametrize("lock_side", ["long", "short"])
def test_side_specific_lock_blocks_buy_and_sell(validator, lock_store, lock_side):
    lock_store.lock("AAPL", 30, "manual", side=lock_side)

    for side in ("BUY", "SELL"):
        result = validator.validate(_proposal(side=side), _portfolio())
        assert result.allowed is False
        assert result.reason == "Pair locked: manual"


def test_lock_store_failure_does_not_block(trades):
    validator = RiskValidator(RiskConfig(), BrokenLockStore(), trades)
    assert validator.validate(_proposal(), _portfolio()).allowed is True


def test_sell_skips_every_portfolio_check(validator):
    broke = _portfolio(cash_available=0, open_positions=99, sector_exposure={"Tech": 50})
    result = validator.validate(_proposal(side="SELL", shares=10_000, sector="Tech"), broke)
    assert result.allowed is True


def test_max_positions(validator):
    result = validator.validate(_proposal(), _portfolio(open_positions=5))
    assert result.allowed is False
    assert result.reason == "Max positions reached: 5/5"


def test_position_size_limit(validator):
    # 200 * 100 = 20,000 > 15% of 100,000
    result = validator.validate(_proposal(shares=200), _portfolio(cash_available=50_000))
    assert result.allowed is False
    assert result.reason == "Position size $20000.00 exceeds max $15000.00 (15.0% of portfolio)"


def test_trade_risk_limit(validator):
    # 100 * 100 * 0.25 = 2,500 > 2% of 100,000
    result = validator.validate(_proposal(shares=100, stop_loss_pct=0.25), _portfolio(cash_available=50_000))
    assert result.allowed is False
    assert result.reason == "Trade risk $2500.00 exceeds max $2000.00 (2.0% of portfolio)"


def test_sector_concentration_by_count(validator):
    result = validator.validate(_proposal(sector="Tech"), _portfolio(sector_exposure={"Tech": 3}))
    assert result.allowed is False
    assert result.reason == "Sector 'Tech' already has 3/3 positions"


def test_sector_concentration_by_value(validator):
    result = validator.validate(_proposal(sector="Tech"), _portfolio(sector_exposure_value={"Tech": 0.35}))
    assert result.allowed is False
    assert result.reason == "Sector 'Tech' value 35.0% exceeds max 35.0%"


def test_other_sector_unaffected(validator):
    portfolio = _portfolio(sector_exposure={"Tech": 3}, sector_exposure_value={"Tech": 0.5})
    assert validator.validate(_proposal(sector="Energy"), portfolio).allowed is True


def test_insufficient_cash(validator):
    result = validator.validate(_proposal(), _portfolio(cash_available=500))
    assert result.allowed is False
    assert result.reason == "Insufficient cash: need $1000.00, have $500.00"


def test_daily_loss(validator):
    assert validator.check_daily_loss(_portfolio(today_pnl_pct=-0.06)) is True
    assert validator.check_daily_loss(_portfolio(today_pnl_pct=-0.05)) is False
    assert validator.check_daily_loss(_portfolio(today_pnl_pct=0.02)) is False


def test_drawdown(validator):
    assert validator.check_drawdown(_portfolio(peak_value=100_000, portfolio_value=89_000)) is True
    assert validator.check_drawdown(_portfolio(peak_value=100_000, portfolio_value=90_000)) is False
    assert validator.check_drawdown(_portfolio(peak_value=0, portfolio_value=10)) is False


def _streak_validator(lock_store, trades):
    cfg = RiskConfig(streak_reduction_threshold=3, streak_reduction_factor=0.5)
    return RiskValidator(cfg, lock_store, trades)


@pytest.mark.parametrize("losses,expected", [(0, 1.0), (2, 1.0), (3, 0.5), (5, 0.5), (6, 0.25)])
def test_losing_streak_multiplier(lock_store, trades, clock, losses, expected):
    # an older win, then the losing run (newest last)
    trades.insert(closed_trade(clock, pnl_pct=0.04, exit_reason="Take-profit triggered", minutes_ago=500))
    for i in range(losses):
        trades.insert(closed_trade(clock, pnl_pct=-0.02, minutes_ago=100 - i))

    assert _streak_validator(lock_store, trades).losing_streak_multiplier() == pytest.approx(expected)


def test_streak_stops_at_first_win(lock_store, trades, clock):
    for i in range(3):
        trades.insert(closed_trade(clock, pnl_pct=-0.02, minutes_ago=300 - i))
    trades.insert(closed_trade(clock, pnl_pct=0.03, exit_reason="Take-profit triggered", minutes_ago=100))
    trades.insert(closed_trade(clock, pnl_pct=-0.02, minutes_ago=50))

    assert _streak_validator(lock_store, trades).losing_streak_multiplier() == 1.0


def test_streak_uses_prices_when_pnl_missing(lock_store, trades, clock):
    for i in range(3):
        t = closed_trade(clock, pnl_pct=-0.02, minutes_ago=30 - i)
        t.pnl = None
        trades.insert(t)

    assert _streak_validator(lock_store, trades).losing_streak_multiplier() == 0.5


def test_streak_unconfigured_is_neutral(validator, trades, clock):
    for i in range(6):
        trades.insert(closed_trade(clock, pnl_pct=-0.02, minutes_ago=30 - i))
    assert validator.losing_streak_multiplier() == 1.0


def test_streak_factor_of_one_is_neutral(lock_store, trades, clock):
    for i in range(6):
        trades.insert(closed_trade(clock, pnl_pct=-0.02, minutes_ago=30 - i))
    cfg = RiskConfig(streak_reduction_threshold=3, streak_reduction_factor=1.0)
    assert RiskValidator(cfg, lock_store, trades).losing_streak_multiplier() == 1.0


def test_streak_history_failure_is_neutral(lock_store):
    class BrokenTrades:
        def list_closed(self, limit=100):
            raise RuntimeError("no such table: trades")

    cfg = RiskConfig(streak_reduction_threshold=3, streak_reduction_factor=0.5)
    assert RiskValidator(cfg, lock_store, BrokenTrades()).losing_streak_multiplier() == 1.0
