"""Tiered partial exits (scale-out) for profitable open positions.

Tiers fire in order; ``Position.partial_exit_count`` is the index of the next
tier. A partial exit never sells the whole position.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tradecore.infrastructure.broker.broker_client import BrokerClient
from tradecore.infrastructure.logging.logging import get_logger
from tradecore.infrastructure.storage.repositories import OrderRepository, PositionRepository, TradeRepository
from tradecore.infrastructure.storage.sqlite_repository import SQLiteDatabase
from tradecore.infrastructure.utils.config import ExecutionConfig, PartialExitConfig
from tradecore.infrastructure.utils.timeutils import Clock, to_iso, utc_now
from tradecore.models.trade_models import ExitTier, OrderRecord, Position, Trade
from tradecore.services.execution.errors import (
    BrokerCallFailed,
    BrokerNotConfigured,
    OrderFillTimeout,
    ProtectiveOrderFailed,
    describe,
)
from tradecore.services.execution.fill_waiter import wait_for_fill
from tradecore.services.execution.protective_orders import ProtectiveOrders, dry_run_order_id


@dataclass(frozen=True)
class EvaluationResult:
    should_exit: bool
    reason: str
    tier: Optional[ExitTier] = None
    tier_index: Optional[int] = None
    shares_to_sell: Optional[int] = None


@dataclass(frozen=True)
class PartialExitResult:
    success: bool
    shares_sold: Optional[float] = None
    fill_price: Optional[float] = None
    new_stop_loss: Optional[float] = None
    order_id: Optional[str] = None
    local_order_id: Optional[int] = None
    error: Optional[str] = None


class PartialExitPlanner:
    def __init__(
        self,
        config: PartialExitConfig,
        execution: ExecutionConfig,
        db: SQLiteDatabase,
        positions: PositionRepository,
        trades: TradeRepository,
        orders: OrderRepository,
        *,
        broker: Optional[BrokerClient] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.execution = execution
        self._db = db
        self._positions = positions
        self._trades = trades
        self._orders = orders
        self._broker = broker
        self._clock = clock
        self._protective = ProtectiveOrders(orders)
        self._log = get_logger("partial_exit")

    def attach_broker(self, broker: BrokerClient) -> None:
        self._broker = broker

    @property
    def tiers(self) -> List[ExitTier]:
        return [ExitTier(t.gain_threshold_pct, t.sell_fraction) for t in self.config.tiers]

    def get_remaining_tiers(self, position: Position) -> List[ExitTier]:
        return self.tiers[position.partial_exit_count or 0:]

    def evaluate_position(self, position: Position) -> EvaluationResult:
        if not self.config.enabled:
            return EvaluationResult(False, "Partial exits disabled")
        if position.current_price is None:
            return EvaluationResult(False, "No current price available")

        gain = (position.current_price - position.entry_price) / position.entry_price
        if gain <= 0:
            return EvaluationResult(False, "Position not profitable")

        done = position.partial_exit_count or 0
        remaining = self.get_remaining_tiers(position)
        if not remaining:
            return EvaluationResult(False, "All partial exit tiers already executed")

        matched = next((i for i, t in enumerate(remaining) if t.gain_threshold_pct <= gain), None)
        if matched is None:
            return EvaluationResult(
                False,
                f"Next tier ({done + 1}) requires {remaining[0].gain_threshold_pct * 100:.1f}% gain, "
                f"current: {gain * 100:.1f}%",
            )

        tier = remaining[matched]
        tier_index = done + matched
        shares_to_sell = math.floor(position.shares * tier.sell_fraction)
        if shares_to_sell < 1:
            return EvaluationResult(
                False,
                f"Tier {tier_index + 1} triggered but calculated shares to sell ({shares_to_sell}) is less than 1",
                tier,
                tier_index,
            )
        if shares_to_sell >= position.shares:
            return EvaluationResult(
                False,
                f"Tier {tier_index + 1} would sell all shares ({shares_to_sell} >= {position.shares:g})",
                tier,
                tier_index,
            )

        self._log.info(
            "partial_exit_tier_triggered",
            symbol=position.symbol,
            gain_pct=round(gain, 6),
            tier=tier_index + 1,
            tier_gain=tier.gain_threshold_pct,
            sell_fraction=tier.sell_fraction,
            shares_to_sell=shares_to_sell,
            remaining_shares=position.shares - shares_to_sell,
        )
        return EvaluationResult(
            True,
            f"Tier {tier_index + 1}: {tier.gain_threshold_pct * 100:.1f}% gain reached",
            tier,
            tier_index,
            shares_to_sell,
        )

    async def execute_partial_exit(
        self,
        symbol: str,
        instrument_id: str,
        shares_to_sell: float,
        reason: str,
        account_type: str = "INVEST",
    ) -> PartialExitResult:
        position = self._positions.get(symbol)
        if position is None:
            self._log.warning("partial_exit_no_position", symbol=symbol)
            return PartialExitResult(False, error=f"No position for {symbol}")

        if shares_to_sell <= 0 or shares_to_sell >= position.shares:
            self._log.warning(
                "partial_exit_invalid_size", symbol=symbol, shares_to_sell=shares_to_sell, total_shares=position.shares
            )
            return PartialExitResult(
                False, error=f"Cannot sell {shares_to_sell:g} shares (total: {position.shares:g})"
            )

        if self.execution.dry_run:
            return self._dry_run_exit(position, instrument_id, shares_to_sell, reason, account_type)
        return await self._live_exit(position, instrument_id, shares_to_sell, reason, account_type)

    def _new_order(self, symbol: str, shares: float, price: float, account_type: str) -> int:
        return self._orders.create(
            OrderRecord(
                symbol=symbol,
                side="SELL",
                order_type="market",
                requested_quantity=shares,
                order_tag="partial_exit",
                account_type=account_type,
                requested_price=price,
            )
        )

    def _record(
        self,
        position: Position,
        instrument_id: str,
        shares: float,
        reason: str,
        account_type: str,
        *,
        exit_price: float,
        intended_price: float,
        exit_iso: str,
        new_stop_loss: Optional[float],
        broker_order_id: str,
        stop_order_id: Optional[str] = None,
        replace_stop_order: bool = False,
    ) -> None:
        updates: Dict[str, Any] = {
            "shares": position.shares - shares,
            "stop_loss": new_stop_loss,
            "partial_exit_count": (position.partial_exit_count or 0) + 1,
        }
        if replace_stop_order:
            updates["stop_order_id"] = stop_order_id

        with self._db.transaction():
            self._trades.insert(
                Trade(
                    symbol=position.symbol,
                    instrument_id=instrument_id,
                    side="SELL",
                    shares=shares,
                    entry_price=position.entry_price,
                    entry_time=position.entry_time,
                    account_type=account_type,
                    exit_price=exit_price,
                    pnl=(exit_price - position.entry_price) * shares,
                    pnl_pct=(exit_price - position.entry_price) / position.entry_price,
                    exit_time=exit_iso,
                    exit_reason=reason,
                    broker_order_id=broker_order_id,
                    intended_price=intended_price,
                    slippage=(intended_price - exit_price) / intended_price,
                )
            )
            self._positions.update(position.symbol, **updates)

    def _dry_run_exit(
        self, position: Position, instrument_id: str, shares: float, reason: str, account_type: str
    ) -> PartialExitResult:
        now = self._clock()
        now_iso = to_iso(now)
        exit_price = position.current_price if position.current_price is not None else position.entry_price
        local_id = self._new_order(position.symbol, shares, exit_price, account_type)

        new_stop = position.stop_loss
        if self.config.move_stop_to_breakeven and (position.partial_exit_count or 0) == 0:
            new_stop = position.entry_price
            self._log.info("stop_moved_to_breakeven", symbol=position.symbol, new_stop_loss=new_stop, mode="DRY_RUN")

        broker_id = dry_run_order_id("PARTIAL_EXIT", position.symbol, now)
        self._record(
            position,
            instrument_id,
            shares,
            reason,
            account_type,
            exit_price=exit_price,
            intended_price=exit_price,
            exit_iso=now_iso,
            new_stop_loss=new_stop,
            broker_order_id=broker_id,
        )
        self._orders.update_status(
            local_id,
            status="filled",
            broker_order_id=broker_id,
            filled_quantity=shares,
            filled_price=exit_price,
            filled_at=now_iso,
        )
        self._log.info(
            "partial_exit_simulated",
            symbol=position.symbol,
            shares_sold=shares,
            remaining_shares=position.shares - shares,
            exit_price=exit_price,
            reason=reason,
            mode="DRY_RUN",
        )
        return PartialExitResult(
            True,
            shares_sold=shares,
            fill_price=exit_price,
            new_stop_loss=new_stop,
            order_id=broker_id,
            local_order_id=local_id,
        )

    async def _live_exit(
        self, position: Position, instrument_id: str, shares: float, reason: str, account_type: str
    ) -> PartialExitResult:
        if self._broker is None:
            return PartialExitResult(False, error=str(BrokerNotConfigured()))
        broker = self._broker

        symbol = position.symbol
        intended = position.current_price if position.current_price is not None else position.entry_price
        local_id = self._new_order(symbol, shares, intended, account_type)

        order_id: Optional[str] = None
        try:
            try:
                order = await broker.place_market_order(ticker=instrument_id, quantity=shares, side="SELL")
            except Exception as e:
                raise BrokerCallFailed("Partial exit sell", e) from e
            order_id = order.id
            self._orders.update_status(local_id, status="open", broker_order_id=order_id)
            self._log.info("partial_exit_order_placed", symbol=symbol, order_id=order_id, shares=shares)

            outcome = await wait_for_fill(
                broker,
                order_id,
                timeout_seconds=self.execution.order_timeout_seconds,
                poll_interval_seconds=self.execution.poll_interval_seconds,
            )
            if outcome.price is None:
                raise OrderFillTimeout(order_id, "Partial exit order fill timeout")
            fill_price = outcome.price

            exit_iso = to_iso(self._clock())
            self._orders.update_status(
                local_id, status="filled", filled_quantity=shares, filled_price=fill_price, filled_at=exit_iso
            )

            new_stop = position.stop_loss
            new_stop_order_id: Optional[str] = None
            moved_stop = False
            first_exit = (position.partial_exit_count or 0) == 0
            if self.config.move_stop_to_breakeven and first_exit and position.stop_order_id:
                new_stop = position.entry_price
                new_stop_order_id = await self._move_stop_to_breakeven(
                    broker, position, instrument_id, position.shares - shares, account_type
                )
                moved_stop = True
                if new_stop_order_id is None:
                    self._log.critical(
                        "position_unprotected_after_breakeven_failure",
                        symbol=symbol,
                        cancelled_stop_order_id=position.stop_order_id,
                        remaining_shares=position.shares - shares,
                    )

            self._record(
                position,
                instrument_id,
                shares,
                reason,
                account_type,
                exit_price=fill_price,
                intended_price=intended,
                exit_iso=exit_iso,
                new_stop_loss=new_stop,
                broker_order_id=order_id,
                stop_order_id=new_stop_order_id,
                replace_stop_order=moved_stop,
            )
            self._log.info(
                "partial_exit_executed",
                symbol=symbol,
                order_id=order_id,
                shares_sold=shares,
                remaining_shares=position.shares - shares,
                fill_price=fill_price,
                new_stop_loss=new_stop,
                reason=reason,
                mode="LIVE",
            )
            return PartialExitResult(
                True,
                shares_sold=shares,
                fill_price=fill_price,
                new_stop_loss=new_stop,
                order_id=order_id,
                local_order_id=local_id,
            )

        except OrderFillTimeout as e:
            self._orders.update_status(local_id, status="failed", cancel_reason=str(e))
            self._log.error("partial_exit_fill_timeout", symbol=symbol, order_id=e.broker_order_id)
            return PartialExitResult(False, order_id=e.broker_order_id, local_order_id=local_id, error=str(e))
        except Exception as e:
            error = describe(e)
            self._orders.update_status(local_id, status="failed", cancel_reason=error)
            self._log.error("partial_exit_failed", symbol=symbol, order_id=order_id, error=error)
            return PartialExitResult(False, order_id=order_id, local_order_id=local_id, error=error)

    async def _move_stop_to_breakeven(
        self,
        broker: BrokerClient,
        position: Position,
        instrument_id: str,
        remaining_shares: float,
        account_type: str,
    ) -> Optional[str]:
        await self._protective.cancel_quietly(broker, position.stop_order_id, symbol=position.symbol, kind="stop_loss")
        await asyncio.sleep(self.execution.stop_loss_delay_seconds)
        try:
            stop_order_id = await self._protective.place_stop(
                broker,
                symbol=position.symbol,
                ticker=instrument_id,
                shares=remaining_shares,
                stop_price=position.entry_price,
                account_type=account_type,
            )
        except ProtectiveOrderFailed as e:
            self._log.error("breakeven_stop_failed", symbol=position.symbol, error=str(e))
            return None
        self._log.info(
            "stop_moved_to_breakeven",
            symbol=position.symbol,
            new_stop_order_id=stop_order_id,
            new_stop_loss=position.entry_price,
        )
        return stop_order_id
