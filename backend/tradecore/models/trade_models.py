from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

GLOBAL_SCOPE = "*"
ANY_SIDE = "*"


@dataclass
class Position:
    symbol: str
    instrument_id: str          # broker ticker, e.g. "AAPL_US_EQ"
    shares: float
    entry_price: float
    entry_time: str
    account_type: str = "INVEST"  # "INVEST" | "ISA"
    current_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    stop_loss: Optional[float] = None
    trailing_stop: Optional[float] = None
    take_profit: Optional[float] = None
    stop_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    partial_exit_count: int = 0
    id: Optional[int] = None
    updated_at: Optional[str] = None


@dataclass
class Trade:
    symbol: str
    instrument_id: str
    side: str               # "BUY" | "SELL"
    shares: float
    entry_price: float
    entry_time: str
    account_type: str = "INVEST"
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    exit_time: Optional[str] = None
    exit_reason: Optional[str] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    broker_order_id: Optional[str] = None
    intended_price: Optional[float] = None
    slippage: Optional[float] = None
    id: Optional[int] = None


@dataclass
class Lock:
    scope: str              # symbol or "*" for global
    lock_end: str
    reason: Optional[str]
    side: str = ANY_SIDE    # "*" | "long" | "short"
    active: bool = True
    created_at: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_global(self) -> bool:
        return self.scope == GLOBAL_SCOPE


@dataclass
class OrderRecord:
    symbol: str
    side: str               # "BUY" | "SELL"
    order_type: str         # "market" | "limit" | "stop"
    requested_quantity: float
    order_tag: str          # "entry" | "exit" | "stoploss" | "take_profit" | "partial_exit"
    account_type: str = "INVEST"
    status: str = "pending"
    requested_price: Optional[float] = None
    stop_price: Optional[float] = None
    filled_quantity: float = 0.0
    filled_price: Optional[float] = None
    broker_order_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    filled_at: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class TradeProposal:
    symbol: str
    side: str               # "BUY" | "SELL"
    shares: float
    price: float
    stop_loss_pct: float
    position_size_pct: float
    sector: Optional[str] = None


@dataclass(frozen=True)
class PortfolioState:
    cash_available: float
    portfolio_value: float
    open_positions: int
    today_pnl: float = 0.0
    today_pnl_pct: float = 0.0
    sector_exposure: Dict[str, int] = field(default_factory=dict)
    sector_exposure_value: Dict[str, float] = field(default_factory=dict)
    peak_value: float = 0.0


@dataclass(frozen=True)
class ExitTier:
    gain_threshold_pct: float
    sell_fraction: float
