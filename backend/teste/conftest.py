from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

import pytest

from tradecore.infrastructure.broker.broker_client import BrokerOrder
from tradecore.infrastructure.storage.repositories import (
    LockRepository,
    OrderRepository,
    PositionRepository,
    TradeRepository,
)
from tradecore.infrastructure.storage.sqlite_repository import SQLiteDatabase
from tradecore.infrastructure.utils.config import ExecutionConfig
from tradecore.infrastructure.utils.timeutils import to_iso
from tradecore.models.trade_models import Position, Trade
from tradecore.services.risk.pair_locks import LockStore


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeBroker:
    """Scripted broker. Market orders fill at ``fill_price`` unless told otherwise."""

    def __init__(self, fill_price: float = 100.0) -> None:
        self.fill_price = fill_price
        self.never_fill = False
        self.fill_after_failed_cancel = False
        self.terminal_status: Optional[str] = None
        self.fail_stop = False
        self.fail_limit = False
        self.fail_cancel = False
        self.fail_market_sides: Set[str] = set()

        self.market_orders: List[Tuple[str, float, str]] = []
        self.stop_orders: List[Tuple[str, float, float]] = []
        self.limit_orders: List[Tuple[str, float, float]] = []
        self.cancelled: List[str] = []
        self.get_order_calls = 0

        self._qty: Dict[str, float] = {}
        self._cancel_attempted: Set[str] = set()
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    async def place_market_order(self, *, ticker: str, quantity: float, side: str, time_validity: str = "DAY"):
        if side in self.fail_market_sides:
            raise RuntimeError("broker unavailable")
        order_id = self._next_id("m")
        self._qty[order_id] = quantity
        self.market_orders.append((ticker, quantity, side))
        return BrokerOrder(id=order_id, status="NEW", quantity=quantity)

    async def place_limit_order(self, *, ticker, quantity, limit_price, side="SELL", time_validity="GTC"):
        if self.fail_limit:
            raise RuntimeError("limit rejected")
        self.limit_orders.append((ticker, quantity, limit_price))
        return BrokerOrder(id=self._next_id("tp"), status="WORKING", quantity=quantity)

    async def place_stop_order(self, *, ticker, quantity, stop_price, side="SELL", time_validity="GTC"):
        if self.fail_stop:
            raise RuntimeError("stop rejected")
        self.stop_orders.append((ticker, quantity, stop_price))
        return BrokerOrder(id=self._next_id("sl"), status="WORKING", quantity=quantity)

    async def get_order(self, order_id: str) -> BrokerOrder:
        self.get_order_calls += 1
        qty = self._qty.get(order_id, 0.0)
        if self.terminal_status:
            return BrokerOrder(id=order_id, status=self.terminal_status, quantity=qty)
        if self.never_fill:
            if self.fill_after_failed_cancel and order_id in self._cancel_attempted:
                return BrokerOrder(
                    id=order_id,
                    status="FILLED",
                    quantity=qty,
                    filled_quantity=qty,
                    filled_value=qty * self.fill_price,
                )
            return BrokerOrder(id=order_id, status="WORKING", quantity=qty)
        return BrokerOrder(
            id=order_id, status="FILLED", quantity=qty, filled_quantity=qty, filled_value=qty * self.fill_price
        )

    async def cancel_order(self, order_id: str) -> None:
        self._cancel_attempted.add(order_id)
        if self.fail_cancel:
            raise RuntimeError("cancel failed")
        self.cancelled.append(order_id)


class FakeQuotes:
    def __init__(self, prices: Dict[str, float]) -> None:
        self.prices = prices

    async def get_price(self, symbol: str) -> Optional[float]:
        if symbol not in self.prices:
            raise LookupError(f"no quote for {symbol}")
        return self.prices[symbol]


def fast_execution(dry_run: bool = True, **kwargs) -> ExecutionConfig:
    values = dict(dry_run=dry_run, order_timeout_seconds=0.01, poll_interval_seconds=0.001, stop_loss_delay_seconds=0)
    values.update(kwargs)
    return ExecutionConfig(**values)


def closed_trade(
    clock: FakeClock,
    symbol: str = "AAPL",
    *,
    pnl_pct: Optional[float] = -0.05,
    exit_reason: str = "Stop-loss triggered",
    minutes_ago: float = 5,
    entry_price: float = 100.0,
    pnl: Optional[float] = None,
) -> Trade:
    exit_price = entry_price * (1 + (pnl_pct or 0.0))
    return Trade(
        symbol=symbol,
        instrument_id=f"{symbol}_US_EQ",
        side="SELL",
        shares=10,
        entry_price=entry_price,
        entry_time=to_iso(clock() - timedelta(days=1)),
        exit_price=exit_price,
        pnl=pnl if pnl is not None else (exit_price - entry_price) * 10,
        pnl_pct=pnl_pct,
        exit_time=to_iso(clock() - timedelta(minutes=minutes_ago)),
        exit_reason=exit_reason,
    )


def open_position(symbol: str = "AAPL", **kwargs) -> Position:
    values = dict(
        symbol=symbol,
        instrument_id=f"{symbol}_US_EQ",
        shares=100,
        entry_price=100.0,
        entry_time="2026-01-01T15:00:00.000000+00:00",
        current_price=100.0,
        stop_loss=95.0,
        take_profit=110.0,
    )
    values.update(kwargs)
    return Position(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    database = SQLiteDatabase(tmp_path / "tradecore.db")
    yield database
    database.close()


@pytest.fixture
def positions(db, clock) -> PositionRepository:
    return PositionRepository(db, clock=clock)


@pytest.fixture
def trades(db) -> TradeRepository:
    return TradeRepository(db)


@pytest.fixture
def lock_repo(db) -> LockRepository:
    return LockRepository(db)


@pytest.fixture
def orders(db, clock) -> OrderRepository:
    return OrderRepository(db, clock=clock)


@pytest.fixture
def lock_store(lock_repo, clock) -> LockStore:
    return LockStore(lock_repo, clock=clock)
