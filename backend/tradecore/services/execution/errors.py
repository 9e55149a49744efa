from __future__ import annotations

from typing import Optional


class ExecutionError(RuntimeError):
    """Base class for failures inside an order attempt."""


class BrokerNotConfigured(ExecutionError):
    def __init__(self) -> None:
        super().__init__("Broker client not configured for live trading")


class BrokerCallFailed(ExecutionError):
    def __init__(self, action: str, cause: object) -> None:
        super().__init__(f"{action} failed: {describe(cause)}")
        self.action = action
        self.cause = cause


class OrderFillTimeout(ExecutionError):
    def __init__(self, broker_order_id: str, message: str = "Order fill timeout") -> None:
        super().__init__(message)
        self.broker_order_id = broker_order_id


class ProtectiveOrderFailed(ExecutionError):
    def __init__(self, kind: str, symbol: str, cause: Optional[object] = None) -> None:
        super().__init__(f"{kind} order for {symbol} failed: {describe(cause)}")
        self.kind = kind
        self.symbol = symbol


def describe(err: object) -> str:
    """Message text for anything raised or handed back by a broker call."""
    if isinstance(err, BaseException):
        return str(err) or err.__class__.__name__
    return str(err)
