"""Fill polling shared by every market order the core places.

SUBMITTED -> (poll) -> FILLED | CANCELLED | REJECTED, with a timeout branch:
cancel the order, and if the cancel itself fails, look once more in case the
fill landed between the last poll and the cancel.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Optional

from tradecore.infrastructure.broker.broker_client import FILLED, TERMINAL_NOT_FILLED, BrokerClient
from tradecore.infrastructure.logging.logging import get_logger
from tradecore.services.execution.errors import describe

log = get_logger("fill_waiter")


@dataclass(frozen=True)
class FillOutcome:
    status: str                     # "filled" | "reconciled" | "cancelled" | "rejected" | "no_price" | "timeout"
    price: Optional[float] = None

    @property
    def filled(self) -> bool:
        return self.price is not None


async def wait_for_fill(
    broker: BrokerClient,
    order_id: str,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
) -> FillOutcome:
    """Poll ``order_id`` until it reaches a terminal state or the timeout elapses.

    Errors from ``get_order`` while polling propagate to the caller.
    """
    attempts = max(1, math.ceil(timeout_seconds / poll_interval_seconds))

    for _ in range(attempts):
        order = await broker.get_order(order_id)

        if order.status == FILLED:
            price = order.fill_price()
            if price is None:
                log.warning("order_filled_without_price", order_id=order_id)
                return FillOutcome("no_price")
            return FillOutcome("filled", price)

        if order.status in TERMINAL_NOT_FILLED:
            log.error("order_not_filled", order_id=order_id, status=order.status)
            return FillOutcome(order.status.lower())

        await asyncio.sleep(poll_interval_seconds)

    log.warning("order_fill_timeout", order_id=order_id, timeout_seconds=timeout_seconds)
    try:
        await broker.cancel_order(order_id)
        log.info("timed_out_order_cancelled", order_id=order_id)
        return FillOutcome("timeout")
    except Exception as cancel_err:
        log.warning("timed_out_order_cancel_failed", order_id=order_id, error=describe(cancel_err))

    try:
        final = await broker.get_order(order_id)
    except Exception as status_err:
        log.error("final_order_status_failed", order_id=order_id, error=describe(status_err))
        return FillOutcome("timeout")

    if final.status == FILLED:
        price = final.reported_fill_price()
        if price is not None:
            log.info("order_fill_reconciled", order_id=order_id, fill_price=price)
            return FillOutcome("reconciled", price)

    return FillOutcome("timeout")
