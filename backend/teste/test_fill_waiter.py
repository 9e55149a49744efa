from __future__ import annotations

import asyncio

import pytest

from conftest import FakeBroker
from tradecore.infrastructure.broker.broker_client import BrokerOrder
from tradecore.services.execution.fill_waiter import wait_for_fill
from tradecore.services.execution.protective_orders import resolve_exit_order_tag


class ValueOnlyBroker(FakeBroker):
    """Reports FILLED with value/quantity but no filled_* fields."""

    async def get_order(self, order_id):
        self.get_order_calls += 1
        return BrokerOrder(id=order_id, status="FILLED", quantity=4, value=402.0)


def _wait(broker, order_id, timeout=0.01):
    return asyncio.run(wait_for_fill(broker, order_id, timeout_seconds=timeout, poll_interval_seconds=0.001))


def _placed(broker, qty=4):
    return asyncio.run(broker.place_market_order(ticker="AAPL_US_EQ", quantity=qty, side="BUY")).id


def test_filled_uses_filled_value():
    broker = FakeBroker(fill_price=99.5)
    outcome = _wait(broker, _placed(broker))
    assert outcome.status == "filled"
    assert outcome.price == pytest.approx(99.5)
    assert broker.get_order_calls == 1


def test_filled_falls_back_to_value():
    broker = ValueOnlyBroker()
    outcome = _wait(broker, "x1")
    assert outcome.price == pytest.approx(100.5)


def test_filled_without_price_data():
    class NoPriceBroker(FakeBroker):
        async def get_order(self, order_id):
            return BrokerOrder(id=order_id, status="FILLED")

    outcome = _wait(NoPriceBroker(), "x1")
    assert outcome.status == "no_price"
    assert outcome.filled is False


@pytest.mark.parametrize("status", ["CANCELLED", "REJECTED"])
def test_terminal_unfilled(status):
    broker = FakeBroker()
    broker.terminal_status = status
    outcome = _wait(broker, _placed(broker))
    assert outcome.status == status.lower()
    assert broker.cancelled == []


def test_timeout_cancels():
    broker = FakeBroker()
    broker.never_fill = True
    order_id = _placed(broker)
    outcome = _wait(broker, order_id)
    assert outcome.status == "timeout"
    assert broker.cancelled == [order_id]


def test_reconcile_after_failed_cancel():
    broker = FakeBroker(fill_price=50.0)
    broker.never_fill = True
    broker.fail_cancel = True
    broker.fill_after_failed_cancel = True
    outcome = _wait(broker, _placed(broker))
    assert outcome.status == "reconciled"
    assert outcome.price == 50.0


def test_reconcile_ignores_value_fallback():
    class LateValueOnly(FakeBroker):
        async def get_order(self, order_id):
            if order_id in self._cancel_attempted:
                return BrokerOrder(id=order_id, status="FILLED", quantity=4, value=400.0)
            return BrokerOrder(id=order_id, status="WORKING", quantity=4)

    broker = LateValueOnly()
    broker.fail_cancel = True
    assert _wait(broker, "x1").status == "timeout"


@pytest.mark.parametrize(
    "reason,tag",
    [
        ("Take-profit triggered", "take_profit"),
        ("tp reached", "take_profit"),
        ("Stop-loss triggered", "stoploss"),
        ("Partial exit tier 2", "partial_exit"),
        ("manual", "exit"),
    ],
)
def test_exit_order_tags(reason, tag):
    assert resolve_exit_order_tag(reason) == tag
