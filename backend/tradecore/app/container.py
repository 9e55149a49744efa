"""Process wiring: every component is built once here and passed down explicitly."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from tradecore.infrastructure.broker.broker_client import BrokerClient, QuoteSource
from tradecore.infrastructure.storage.repositories import (
    LockRepository,
    OrderRepository,
    PositionRepository,
    TradeRepository,
)
from tradecore.infrastructure.storage.sqlite_repository import SQLiteDatabase
from tradecore.infrastructure.utils.config import TradeCoreConfig
from tradecore.infrastructure.utils.timeutils import Clock, utc_now
from tradecore.services.execution.order_executor import OrderExecutor
from tradecore.services.execution.partial_exit import PartialExitPlanner
from tradecore.services.execution.position_tracker import PositionTracker
from tradecore.services.risk.pair_locks import LockStore
from tradecore.services.risk.protections import ProtectionEngine
from tradecore.services.risk.risk_validator import RiskValidator


@dataclass
class Container:
    config: TradeCoreConfig
    db: SQLiteDatabase
    positions: PositionRepository
    trades: TradeRepository
    locks: LockRepository
    orders: OrderRepository
    lock_store: LockStore
    risk_validator: RiskValidator
    protections: ProtectionEngine
    executor: OrderExecutor
    partial_exits: PartialExitPlanner
    tracker: PositionTracker

    def attach_broker(self, broker: BrokerClient) -> None:
        self.executor.attach_broker(broker)
        self.partial_exits.attach_broker(broker)

    def close(self) -> None:
        self.db.close()


def build_container(
    config: TradeCoreConfig,
    *,
    broker: Optional[BrokerClient] = None,
    quotes: Optional[QuoteSource] = None,
    clock: Clock = utc_now,
    db_path: Optional[Path] = None,
) -> Container:
    db = SQLiteDatabase(db_path or Path(config.database.sqlite.path))
    positions = PositionRepository(db, clock=clock)
    trades = TradeRepository(db)
    locks = LockRepository(db)
    orders = OrderRepository(db, clock=clock)

    lock_store = LockStore(locks, clock=clock)
    protections = ProtectionEngine(config.protection, lock_store, trades, clock=clock)
    risk_validator = RiskValidator(config.risk, lock_store, trades)
    executor = OrderExecutor(
        config.execution,
        db,
        positions,
        trades,
        orders,
        broker=broker,
        quotes=quotes,
        protections=protections,
        clock=clock,
    )
    partial_exits = PartialExitPlanner(
        config.partial_exit,
        config.execution,
        db,
        positions,
        trades,
        orders,
        broker=broker,
        clock=clock,
    )

    return Container(
        config=config,
        db=db,
        positions=positions,
        trades=trades,
        locks=locks,
        orders=orders,
        lock_store=lock_store,
        risk_validator=risk_validator,
        protections=protections,
        executor=executor,
        partial_exits=partial_exits,
        tracker=PositionTracker(positions),
    )
