"""Brokerage capability consumed by the execution core.

The wire protocol lives elsewhere; anything that satisfies ``BrokerClient``
(a REST client, a paper broker, a test fake) can be attached to the executor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

FILLED = "FILLED"
CANCELLED = "CANCELLED"
REJECTED = "REJECTED"
TERMINAL_NOT_FILLED = (CANCELLED, REJECTED)


@dataclass(frozen=True)
class BrokerOrder:
    id: str
    status: str                       # "NEW" | "WORKING" | "FILLED" | "CANCELLED" | "REJECTED" ...
    quantity: Optional[float] = None
    value: Optional[float] = None
    filled_quantity: Optional[float] = None
    filled_value: Optional[float] = None

    @property
    def is_filled(self) -> bool:
        return self.status == FILLED

    def fill_price(self) -> Optional[float]:
        """Average fill price, falling back to value/quantity."""
        price = self.reported_fill_price()
        if price is not None:
            return price
        if self.value is not None and self.quantity is not None and self.quantity > 0:
            return self.value / self.quantity
        return None

    def reported_fill_price(self) -> Optional[float]:
        """Average fill price from filled_value/filled_quantity only."""
        if self.filled_value is not None and self.filled_quantity is not None and self.filled_quantity > 0:
            return self.filled_value / self.filled_quantity
        return None


class BrokerClient(Protocol):
    async def place_market_order(
        self, *, ticker: str, quantity: float, side: str, time_validity: str = "DAY"
    ) -> BrokerOrder: ...

    async def place_limit_order(
        self, *, ticker: str, quantity: float, limit_price: float, side: str = "SELL", time_validity: str = "GTC"
    ) -> BrokerOrder: ...

    async def place_stop_order(
        self, *, ticker: str, quantity: float, stop_price: float, side: str = "SELL", time_validity: str = "GTC"
    ) -> BrokerOrder: ...

    async def get_order(self, order_id: str) -> BrokerOrder: ...

    async def cancel_order(self, order_id: str) -> None: ...


class QuoteSource(Protocol):
    async def get_price(self, symbol: str) -> Optional[float]: ...
