from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from tradecore.infrastructure.broker.broker_client import QuoteSource
from tradecore.infrastructure.logging.logging import get_logger
from tradecore.infrastructure.storage.repositories import PositionRepository
from tradecore.services.execution.errors import describe


@dataclass
class ExitCheckResult:
    positions_to_close: List[str] = field(default_factory=list)
    exit_reasons: Dict[str, str] = field(default_factory=dict)


class PositionTracker:
    """Keeps open positions marked to market and flags stop / take-profit exits."""

    def __init__(self, positions: PositionRepository) -> None:
        self._positions = positions
        self._log = get_logger("position_tracker")

    async def refresh_prices(self, quotes: QuoteSource) -> int:
        """Update current price and pnl for every position. Returns how many were updated."""
        all_positions = self._positions.list_all()
        updated = 0
        for pos in all_positions:
            try:
                price = await quotes.get_price(pos.symbol)
                if price is None:
                    continue
                self._positions.update(
                    pos.symbol,
                    current_price=price,
                    pnl=(price - pos.entry_price) * pos.shares,
                    pnl_pct=(price - pos.entry_price) / pos.entry_price,
                )
                updated += 1
            except Exception as e:
                self._log.error("position_price_update_failed", symbol=pos.symbol, error=describe(e))

        if all_positions:
            self._log.info("positions_updated", total_positions=len(all_positions), updated=updated)
        return updated

    def update_trailing_stops(self) -> int:
        """Trail profitable positions by their original stop distance. Stops only move up."""
        moved = 0
        for pos in self._positions.list_all():
            if pos.current_price is None or pos.stop_loss is None:
                continue
            gain = (pos.current_price - pos.entry_price) / pos.entry_price
            if gain <= 0:
                continue

            stop_pct = (pos.entry_price - pos.stop_loss) / pos.entry_price
            new_stop = pos.current_price * (1 - stop_pct)
            current_stop = pos.trailing_stop if pos.trailing_stop is not None else pos.stop_loss
            if new_stop > current_stop:
                self._positions.update(pos.symbol, trailing_stop=new_stop)
                moved += 1
                self._log.info(
                    "trailing_stop_updated",
                    symbol=pos.symbol,
                    old_stop=current_stop,
                    new_stop=new_stop,
                    current_price=pos.current_price,
                    gain_pct=round(gain, 6),
                )
        return moved

    def check_exit_conditions(self) -> ExitCheckResult:
        result = ExitCheckResult()
        for pos in self._positions.list_all():
            if pos.current_price is None:
                continue

            effective_stop = pos.trailing_stop if pos.trailing_stop is not None else pos.stop_loss
            if effective_stop is not None and pos.current_price <= effective_stop:
                self._log.warning(
                    "stop_loss_triggered", symbol=pos.symbol, current_price=pos.current_price, stop_level=effective_stop
                )
                result.positions_to_close.append(pos.symbol)
                result.exit_reasons[pos.symbol] = "Stop-loss triggered"
                continue

            if pos.take_profit is not None and pos.current_price >= pos.take_profit:
                self._log.info(
                    "take_profit_triggered", symbol=pos.symbol, current_price=pos.current_price, take_profit=pos.take_profit
                )
                result.positions_to_close.append(pos.symbol)
                result.exit_reasons[pos.symbol] = "Take-profit triggered"

        if result.positions_to_close:
            self._log.info("exit_conditions_triggered", positions_to_close=result.positions_to_close)
        return result
