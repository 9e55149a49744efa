"""Protective stop / take-profit orders, each tracked by a local order record."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from tradecore.infrastructure.broker.broker_client import BrokerClient
from tradecore.infrastructure.logging.logging import get_logger
from tradecore.infrastructure.storage.repositories import OrderRepository
from tradecore.infrastructure.utils.timeutils import epoch_ms
from tradecore.models.trade_models import OrderRecord
from tradecore.services.execution.errors import ProtectiveOrderFailed, describe


def dry_run_order_id(side: str, symbol: str, now: datetime) -> str:
    return f"dry_run_{side}_{symbol}_{epoch_ms(now)}"


def resolve_exit_order_tag(exit_reason: str) -> str:
    lower = (exit_reason or "").lower()
    if "take profit" in lower or "take-profit" in lower or "tp " in lower:
        return "take_profit"
    if "stoploss" in lower or "stop-loss" in lower or "stop loss" in lower:
        return "stoploss"
    if "partial" in lower:
        return "partial_exit"
    return "exit"


class ProtectiveOrders:
    def __init__(self, orders: OrderRepository) -> None:
        self._orders = orders
        self._log = get_logger("protective_orders")

    async def place_stop(
        self,
        broker: BrokerClient,
        *,
        symbol: str,
        ticker: str,
        shares: float,
        stop_price: float,
        account_type: str,
    ) -> str:
        """Place a GTC sell stop. Raises ProtectiveOrderFailed."""
        local_id = self._orders.create(
            OrderRecord(
                symbol=symbol,
                side="SELL",
                order_type="stop",
                requested_quantity=shares,
                order_tag="stoploss",
                account_type=account_type,
                stop_price=stop_price,
            )
        )
        try:
            order = await broker.place_stop_order(
                ticker=ticker, quantity=shares, stop_price=stop_price, time_validity="GTC"
            )
        except Exception as e:
            self._orders.update_status(local_id, status="failed", cancel_reason=describe(e))
            raise ProtectiveOrderFailed("stop-loss", symbol, e) from e

        self._orders.update_status(local_id, status="open", broker_order_id=order.id)
        self._log.info("stop_loss_order_placed", symbol=symbol, stop_order_id=order.id, stop_price=stop_price)
        return order.id

    async def place_take_profit(
        self,
        broker: BrokerClient,
        *,
        symbol: str,
        ticker: str,
        shares: float,
        limit_price: float,
        account_type: str,
    ) -> str:
        """Place a GTC sell limit. Raises ProtectiveOrderFailed."""
        local_id = self._orders.create(
            OrderRecord(
                symbol=symbol,
                side="SELL",
                order_type="limit",
                requested_quantity=shares,
                order_tag="take_profit",
                account_type=account_type,
                requested_price=limit_price,
            )
        )
        try:
            order = await broker.place_limit_order(
                ticker=ticker, quantity=shares, limit_price=limit_price, time_validity="GTC"
            )
        except Exception as e:
            self._orders.update_status(local_id, status="failed", cancel_reason=describe(e))
            raise ProtectiveOrderFailed("take-profit", symbol, e) from e

        self._orders.update_status(local_id, status="open", broker_order_id=order.id)
        self._log.info(
            "take_profit_order_placed", symbol=symbol, take_profit_order_id=order.id, take_profit_price=limit_price
        )
        return order.id

    async def cancel_quietly(self, broker: BrokerClient, order_id: Optional[str], *, symbol: str, kind: str) -> bool:
        """Best-effort cancel; an already-filled protective order is expected."""
        if not order_id:
            return False
        try:
            await broker.cancel_order(order_id)
        except Exception as e:
            self._log.warning("protective_order_cancel_failed", symbol=symbol, kind=kind, order_id=order_id, error=describe(e))
            return False
        self._log.info("protective_order_cancelled", symbol=symbol, kind=kind, order_id=order_id)
        return True
