from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from tradecore.infrastructure.broker.broker_client import BrokerClient, QuoteSource
from tradecore.infrastructure.logging.logging import get_logger
from tradecore.infrastructure.storage.repositories import OrderRepository, PositionRepository, TradeRepository
from tradecore.infrastructure.storage.sqlite_repository import SQLiteDatabase
from tradecore.infrastructure.utils.config import ExecutionConfig
from tradecore.infrastructure.utils.timeutils import Clock, epoch_ms, to_iso, utc_now
from tradecore.models.trade_models import OrderRecord, Position, Trade
from tradecore.services.execution.errors import (
    BrokerCallFailed,
    BrokerNotConfigured,
    OrderFillTimeout,
    ProtectiveOrderFailed,
    describe,
)
from tradecore.services.execution.fill_waiter import wait_for_fill
from tradecore.services.execution.protective_orders import (
    ProtectiveOrders,
    dry_run_order_id,
    resolve_exit_order_tag,
)
from tradecore.services.risk.protections import ProtectionEngine


@dataclass(frozen=True)
class BuyParams:
    symbol: str
    instrument_id: str      # broker ticker
    shares: float
    price: float            # intended (quoted) price
    stop_loss_pct: float
    take_profit_pct: float
    account_type: str = "INVEST"


@dataclass(frozen=True)
class CloseParams:
    symbol: str
    instrument_id: str
    exit_reason: str
    account_type: str = "INVEST"


@dataclass(frozen=True)
class OrderResult:
    success: bool
    trade_id: Optional[int] = None
    order_id: Optional[str] = None          # broker order id
    local_order_id: Optional[int] = None
    fill_price: Optional[float] = None
    error: Optional[str] = None


class OrderExecutor:
    """Buy / close lifecycle against the broker, persisted trade+position atomically."""

    def __init__(
        self,
        config: ExecutionConfig,
        db: SQLiteDatabase,
        positions: PositionRepository,
        trades: TradeRepository,
        orders: OrderRepository,
        *,
        broker: Optional[BrokerClient] = None,
        quotes: Optional[QuoteSource] = None,
        protections: Optional[ProtectionEngine] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self._db = db
        self._positions = positions
        self._trades = trades
        self._orders = orders
        self._broker = broker
        self._quotes = quotes
        self._protections = protections
        self._clock = clock
        self._protective = ProtectiveOrders(orders)
        self._log = get_logger("order_executor")

    @property
    def broker(self) -> Optional[BrokerClient]:
        return self._broker

    def attach_broker(self, broker: BrokerClient) -> None:
        self._broker = broker

    def _require_broker(self) -> BrokerClient:
        if self._broker is None:
            raise BrokerNotConfigured()
        return self._broker

    async def _wait(self, broker: BrokerClient, order_id: str) -> Optional[float]:
        outcome = await wait_for_fill(
            broker,
            order_id,
            timeout_seconds=self.config.order_timeout_seconds,
            poll_interval_seconds=self.config.poll_interval_seconds,
        )
        return outcome.price

    # ------------------------------------------------------------------ buy

    async def execute_buy(self, params: BuyParams) -> OrderResult:
        if self.config.dry_run:
            return self._dry_run_buy(params)
        return await self._live_buy(params)

    def _dry_run_buy(self, p: BuyParams) -> OrderResult:
        now = self._clock()
        now_iso = to_iso(now)
        stop_loss = p.price * (1 - p.stop_loss_pct)
        take_profit = p.price * (1 + p.take_profit_pct)
        tp_order_id = f"tp-dry-{epoch_ms(now)}-{secrets.token_hex(4)}" if p.take_profit_pct > 0 else None

        # Every attempt gets an audit record; a rejected duplicate leaves it as "failed"
        local_id = self._orders.create(
            OrderRecord(
                symbol=p.symbol,
                side="BUY",
                order_type="market",
                requested_quantity=p.shares,
                order_tag="entry",
                account_type=p.account_type,
                requested_price=p.price,
            )
        )

        with self._db.transaction():
            # Duplicate check inside the transaction so check and insert commit together
            if self._positions.get(p.symbol) is not None:
                trade_id = None
            else:
                trade_id = self._trades.insert(
                    Trade(
                        symbol=p.symbol,
                        instrument_id=p.instrument_id,
                        side="BUY",
                        shares=p.shares,
                        entry_price=p.price,
                        entry_time=now_iso,
                        account_type=p.account_type,
                        stop_loss=stop_loss,
                        take_profit=take_profit,
                        intended_price=p.price,
                        slippage=0.0,
                    )
                )
                self._positions.upsert(
                    Position(
                        symbol=p.symbol,
                        instrument_id=p.instrument_id,
                        shares=p.shares,
                        entry_price=p.price,
                        entry_time=now_iso,
                        account_type=p.account_type,
                        current_price=p.price,
                        pnl=0.0,
                        pnl_pct=0.0,
                        stop_loss=stop_loss,
                        take_profit=take_profit,
                        take_profit_order_id=tp_order_id,
                    )
                )

        if trade_id is None:
            error = f"Position already exists for {p.symbol}"
            self._orders.update_status(local_id, status="failed", cancel_reason=error)
            self._log.warning("buy_skipped_position_exists", symbol=p.symbol)
            return OrderResult(False, local_order_id=local_id, error=error)

        broker_id = dry_run_order_id("BUY", p.symbol, now)
        self._orders.update_status(
            local_id,
            status="filled",
            broker_order_id=broker_id,
            filled_quantity=p.shares,
            filled_price=p.price,
            filled_at=now_iso,
        )
        self._log.info(
            "buy_simulated",
            symbol=p.symbol,
            shares=p.shares,
            price=p.price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            take_profit_order_id=tp_order_id,
            mode="DRY_RUN",
        )
        return OrderResult(True, trade_id=trade_id, order_id=broker_id, local_order_id=local_id, fill_price=p.price)

    async def _live_buy(self, p: BuyParams) -> OrderResult:
        try:
            broker = self._require_broker()
        except BrokerNotConfigured as e:
            return OrderResult(False, error=str(e))

        # Best-effort: callers serialize trading per symbol
        if self._positions.get(p.symbol) is not None:
            self._log.warning("buy_skipped_position_exists", symbol=p.symbol)
            return OrderResult(False, error=f"Position already exists for {p.symbol}")

        now_iso = to_iso(self._clock())
        local_id = self._orders.create(
            OrderRecord(
                symbol=p.symbol,
                side="BUY",
                order_type="market",
                requested_quantity=p.shares,
                order_tag="entry",
                account_type=p.account_type,
                requested_price=p.price,
            )
        )

        order_id: Optional[str] = None
        try:
            try:
                order = await broker.place_market_order(ticker=p.instrument_id, quantity=p.shares, side="BUY")
            except Exception as e:
                raise BrokerCallFailed("Market buy", e) from e
            order_id = order.id
            self._orders.update_status(local_id, status="open", broker_order_id=order_id)
            self._log.info("market_buy_placed", symbol=p.symbol, order_id=order_id, shares=p.shares)

            fill_price = await self._wait(broker, order_id)
            if fill_price is None:
                raise OrderFillTimeout(order_id, "Order fill timeout")

            self._orders.update_status(
                local_id,
                status="filled",
                filled_quantity=p.shares,
                filled_price=fill_price,
                filled_at=to_iso(self._clock()),
            )

            stop_loss = fill_price * (1 - p.stop_loss_pct)
            take_profit = fill_price * (1 + p.take_profit_pct)

            # Broker needs the entry to settle before it accepts a stop on it
            await asyncio.sleep(self.config.stop_loss_delay_seconds)

            stop_order_id: Optional[str] = None
            try:
                stop_order_id = await self._protective.place_stop(
                    broker,
                    symbol=p.symbol,
                    ticker=p.instrument_id,
                    shares=p.shares,
                    stop_price=stop_loss,
                    account_type=p.account_type,
                )
            except ProtectiveOrderFailed as e:
                await self._emergency_close(broker, p, e)

            take_profit_order_id: Optional[str] = None
            if p.take_profit_pct > 0:
                try:
                    take_profit_order_id = await self._protective.place_take_profit(
                        broker,
                        symbol=p.symbol,
                        ticker=p.instrument_id,
                        shares=p.shares,
                        limit_price=take_profit,
                        account_type=p.account_type,
                    )
                except ProtectiveOrderFailed as e:
                    self._log.warning("take_profit_not_placed", symbol=p.symbol, error=str(e))

            slippage = (fill_price - p.price) / p.price
            with self._db.transaction():
                trade_id = self._trades.insert(
                    Trade(
                        symbol=p.symbol,
                        instrument_id=p.instrument_id,
                        side="BUY",
                        shares=p.shares,
                        entry_price=fill_price,
                        entry_time=now_iso,
                        account_type=p.account_type,
                        stop_loss=stop_loss,
                        take_profit=take_profit,
                        broker_order_id=order_id,
                        intended_price=p.price,
                        slippage=slippage,
                    )
                )
                self._positions.upsert(
                    Position(
                        symbol=p.symbol,
                        instrument_id=p.instrument_id,
                        shares=p.shares,
                        entry_price=fill_price,
                        entry_time=now_iso,
                        account_type=p.account_type,
                        current_price=fill_price,
                        pnl=0.0,
                        pnl_pct=0.0,
                        stop_loss=stop_loss,
                        take_profit=take_profit,
                        stop_order_id=stop_order_id,
                        take_profit_order_id=take_profit_order_id,
                    )
                )

            self._log.info(
                "buy_filled",
                symbol=p.symbol,
                order_id=order_id,
                fill_price=fill_price,
                shares=p.shares,
                slippage=slippage,
                mode="LIVE",
            )
            return OrderResult(
                True, trade_id=trade_id, order_id=order_id, local_order_id=local_id, fill_price=fill_price
            )

        except OrderFillTimeout as e:
            self._orders.update_status(local_id, status="failed", cancel_reason=str(e))
            self._log.error("buy_fill_timeout", symbol=p.symbol, order_id=e.broker_order_id)
            return OrderResult(False, order_id=e.broker_order_id, local_order_id=local_id, error=str(e))
        except Exception as e:
            error = describe(e)
            self._orders.update_status(local_id, status="failed", cancel_reason=error)
            self._log.error("buy_failed", symbol=p.symbol, order_id=order_id, error=error)
            return OrderResult(False, order_id=order_id, local_order_id=local_id, error=error)

    async def _emergency_close(self, broker: BrokerClient, p: BuyParams, cause: ProtectiveOrderFailed) -> None:
        self._log.error("stop_loss_failed_closing_position", symbol=p.symbol, error=str(cause))
        try:
            await broker.place_market_order(ticker=p.instrument_id, quantity=p.shares, side="SELL")
        except Exception as close_err:
            self._log.critical(
                "unprotected_position_manual_intervention_required",
                symbol=p.symbol,
                shares=p.shares,
                stop_error=str(cause),
                close_error=describe(close_err),
            )
            return
        self._log.warning("position_closed_after_stop_failure", symbol=p.symbol)

    # ---------------------------------------------------------------- close

    async def execute_close(self, params: CloseParams) -> OrderResult:
        position = self._positions.get(params.symbol)
        if position is None:
            self._log.warning("close_skipped_no_position", symbol=params.symbol)
            return OrderResult(False, error=f"No position for {params.symbol}")

        if self.config.dry_run:
            result, pnl_pct = self._dry_run_close(params, position)
        else:
            result, pnl_pct = await self._live_close(params, position)

        if result.success and self._protections is not None:
            self._protections.evaluate_after_close(params.symbol, params.exit_reason, pnl_pct)
        return result

    def _record_close(
        self,
        params: CloseParams,
        position: Position,
        *,
        shares: float,
        exit_price: float,
        intended_price: float,
        slippage: float,
        exit_iso: str,
        broker_order_id: Optional[str],
    ) -> Tuple[int, float, float]:
        pnl = (exit_price - position.entry_price) * shares
        pnl_pct = (exit_price - position.entry_price) / position.entry_price
        with self._db.transaction():
            trade_id = self._trades.insert(
                Trade(
                    symbol=params.symbol,
                    instrument_id=params.instrument_id,
                    side="SELL",
                    shares=shares,
                    entry_price=position.entry_price,
                    entry_time=position.entry_time,
                    account_type=params.account_type,
                    exit_price=exit_price,
                    pnl=pnl,
                    pnl_pct=pnl_pct,
                    exit_time=exit_iso,
                    exit_reason=params.exit_reason,
                    broker_order_id=broker_order_id,
                    intended_price=intended_price,
                    slippage=slippage,
                )
            )
            self._positions.delete(params.symbol)
        return trade_id, pnl, pnl_pct

    def _dry_run_close(self, params: CloseParams, position: Position) -> Tuple[OrderResult, float]:
        now = self._clock()
        now_iso = to_iso(now)
        shares = position.shares
        exit_price = position.current_price if position.current_price is not None else position.entry_price

        local_id = self._orders.create(
            OrderRecord(
                symbol=params.symbol,
                side="SELL",
                order_type="market",
                requested_quantity=shares,
                order_tag=resolve_exit_order_tag(params.exit_reason),
                account_type=params.account_type,
                requested_price=exit_price,
            )
        )
        broker_id = dry_run_order_id("SELL", params.symbol, now)
        trade_id, pnl, pnl_pct = self._record_close(
            params,
            position,
            shares=shares,
            exit_price=exit_price,
            intended_price=exit_price,
            slippage=0.0,
            exit_iso=now_iso,
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
            "close_simulated",
            symbol=params.symbol,
            shares=shares,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            pnl_pct=round(pnl_pct, 6),
            exit_reason=params.exit_reason,
            mode="DRY_RUN",
        )
        result = OrderResult(True, trade_id=trade_id, order_id=broker_id, local_order_id=local_id, fill_price=exit_price)
        return result, pnl_pct

    async def _live_close(self, params: CloseParams, position: Position) -> Tuple[OrderResult, float]:
        try:
            broker = self._require_broker()
        except BrokerNotConfigured as e:
            return OrderResult(False, error=str(e)), 0.0

        shares = position.shares
        intended = position.current_price if position.current_price is not None else position.entry_price
        local_id = self._orders.create(
            OrderRecord(
                symbol=params.symbol,
                side="SELL",
                order_type="market",
                requested_quantity=shares,
                order_tag=resolve_exit_order_tag(params.exit_reason),
                account_type=params.account_type,
                requested_price=intended,
            )
        )

        order_id: Optional[str] = None
        try:
            await self._protective.cancel_quietly(broker, position.stop_order_id, symbol=params.symbol, kind="stop_loss")
            await self._protective.cancel_quietly(
                broker, position.take_profit_order_id, symbol=params.symbol, kind="take_profit"
            )

            try:
                order = await broker.place_market_order(ticker=params.instrument_id, quantity=shares, side="SELL")
            except Exception as e:
                raise BrokerCallFailed("Market sell", e) from e
            order_id = order.id
            self._orders.update_status(local_id, status="open", broker_order_id=order_id)
            self._log.info("market_sell_placed", symbol=params.symbol, order_id=order_id, shares=shares)

            fill_price = await self._wait(broker, order_id)
            if fill_price is None:
                raise OrderFillTimeout(order_id, "Sell order fill timeout")

            exit_iso = to_iso(self._clock())
            self._orders.update_status(
                local_id, status="filled", filled_quantity=shares, filled_price=fill_price, filled_at=exit_iso
            )

            trade_id, pnl, pnl_pct = self._record_close(
                params,
                position,
                shares=shares,
                exit_price=fill_price,
                intended_price=intended,
                slippage=(intended - fill_price) / intended,
                exit_iso=exit_iso,
                broker_order_id=order_id,
            )
            self._log.info(
                "position_closed",
                symbol=params.symbol,
                order_id=order_id,
                fill_price=fill_price,
                pnl=pnl,
                pnl_pct=round(pnl_pct, 6),
                exit_reason=params.exit_reason,
                mode="LIVE",
            )
            result = OrderResult(
                True, trade_id=trade_id, order_id=order_id, local_order_id=local_id, fill_price=fill_price
            )
            return result, pnl_pct

        except OrderFillTimeout as e:
            self._orders.update_status(local_id, status="failed", cancel_reason=str(e))
            self._log.error("close_fill_timeout", symbol=params.symbol, order_id=e.broker_order_id)
            return OrderResult(False, order_id=e.broker_order_id, local_order_id=local_id, error=str(e)), 0.0
        except Exception as e:
            error = describe(e)
            self._orders.update_status(local_id, status="failed", cancel_reason=error)
            self._log.error("close_failed", symbol=params.symbol, order_id=order_id, error=error)
            return OrderResult(False, order_id=order_id, local_order_id=local_id, error=error), 0.0

    # ---------------------------------------------------------------- quotes

    async def get_current_price(self, symbol: str) -> Optional[float]:
        if self._quotes is None:
            return None
        try:
            return await self._quotes.get_price(symbol)
        except Exception as e:
            self._log.error("current_price_failed", symbol=symbol, error=describe(e))
            return None
