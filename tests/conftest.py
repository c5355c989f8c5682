import os
import sys
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from ema_trader.config import SettingsRegistry  # noqa: E402
from ema_trader.market_calendar import MarketCalendar  # noqa: E402
from ema_trader.market_data import MarketDataSource  # noqa: E402
from ema_trader.models import (  # noqa: E402
    Bar,
    CloseSeries,
    OrderResult,
    OrderState,
    OrderStatusReport,
    ProtectiveOrders,
)
from ema_trader.order_gateway import OrderGateway, OrderGatewayError  # noqa: E402
from ema_trader.position_store import InMemoryPositionStore  # noqa: E402
from ema_trader.retry import RetryingFetcher  # noqa: E402


# Tuesday, regular session, venue-local
MARKET_OPEN_NOW = datetime(2024, 3, 12, 11, 0)
BAR_TIME = datetime(2024, 3, 12, 10, 55)


class FakeMarketData(MarketDataSource):
    """Scriptable market data: fixed closes per symbol, latest prices, injected failures."""

    def __init__(self, closes: Optional[Dict[str, List[float]]] = None,
                 latest: Optional[Dict[str, float]] = None):
        self.closes = dict(closes or {})
        self.latest = dict(latest or {})
        self.errors: List[Exception] = []
        self.always_raise: Optional[Exception] = None
        self.close_calls = 0
        self.latest_calls = 0
        self._lock = threading.Lock()

    def _maybe_fail(self):
        if self.always_raise is not None:
            raise self.always_raise
        if self.errors:
            raise self.errors.pop(0)

    def get_closes(self, symbol, timeframe, limit):
        with self._lock:
            self.close_calls += 1
            self._maybe_fail()
        if symbol not in self.closes:
            return None
        return CloseSeries(
            symbol=symbol,
            timeframe=timeframe,
            closes=self.closes[symbol][-limit:],
            timestamp=BAR_TIME,
        )

    def get_latest_bar(self, symbol):
        with self._lock:
            self.latest_calls += 1
            self._maybe_fail()
        if symbol not in self.latest:
            return None
        price = self.latest[symbol]
        return Bar(symbol=symbol, ts=BAR_TIME, open=price, high=price, low=price, close=price, volume=100)


class FakeOrderGateway(OrderGateway):
    """Thread-safe fake broker. Buys fill (or stay pending) at `fill_price`."""

    def __init__(self, status: OrderState = OrderState.FILLED, fill_price: float = 100.0, delay: float = 0.0):
        self.status = status
        self.fill_price = fill_price
        self.delay = delay
        self.buy_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.safety_error: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.order_statuses: Dict[str, OrderStatusReport] = {}

        self.buy_calls = 0
        self.safety_calls = []
        self.closed_positions = []
        self._counter = 0
        self._lock = threading.Lock()

    def _next_id(self, prefix):
        with self._lock:
            self._counter += 1
            return f"{prefix}-{self._counter}"

    def place_buy_with_safety(self, symbol, notional, profit_pct, loss_pct):
        with self._lock:
            self.buy_calls += 1
        if self.delay:
            # Widen the race window for concurrency tests
            time.sleep(self.delay)
        if self.buy_error is not None:
            raise self.buy_error

        order_id = self._next_id("order")
        if self.status != OrderState.FILLED:
            return OrderResult(status=self.status, primary_order_id=order_id, symbol=symbol, amount=notional)

        qty = notional / self.fill_price
        protective = self.setup_safety_orders(symbol, self.fill_price, qty, profit_pct, loss_pct)
        return OrderResult(
            status=OrderState.FILLED,
            primary_order_id=order_id,
            symbol=symbol,
            amount=notional,
            fill_price=self.fill_price,
            fill_qty=qty,
            take_profit_order_id=protective.take_profit_order_id,
            stop_loss_order_id=protective.stop_loss_order_id,
        )

    def get_order_status(self, order_id):
        if self.status_error is not None:
            raise self.status_error
        return self.order_statuses.get(order_id, OrderStatusReport(order_id=order_id, status=OrderState.NEW))

    def setup_safety_orders(self, symbol, fill_price, fill_qty, profit_pct, loss_pct):
        self.safety_calls.append((symbol, fill_price, fill_qty, profit_pct, loss_pct))
        if self.safety_error is not None:
            raise self.safety_error
        return ProtectiveOrders(
            take_profit_order_id=self._next_id("tp"),
            stop_loss_order_id=self._next_id("sl"),
        )

    def close_position(self, position):
        if self.delay:
            time.sleep(self.delay)
        if self.close_error is not None:
            raise OrderGatewayError(str(self.close_error))
        with self._lock:
            self.closed_positions.append(position.id)
        return self._next_id("exit")


def run_concurrently(n, target):
    """Start n threads behind a barrier and collect what target(i) returns."""
    barrier = threading.Barrier(n)
    results = []
    lock = threading.Lock()

    def worker(i):
        barrier.wait()
        value = target(i)
        with lock:
            results.append(value)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results

@pytest.fixture
def no_sleep():
    delays = []
    return delays.append, delays


@pytest.fixture
def fetcher(no_sleep):
    sleep, _ = no_sleep
    return RetryingFetcher(max_retries=3, base_delay=2.0, sleep=sleep)


@pytest.fixture
def settings():
    return SettingsRegistry({
        'trading': {
            'timeframe': '5Min',
            'profit_percentage': 2.0,
            'loss_percentage': 2.0,
            'confirmation_bars': 0,
            'trade_amount': 1000.0,
            'symbols': ['AAPL'],
        },
    })


@pytest.fixture
def calendar():
    return MarketCalendar()


@pytest.fixture
def store():
    return InMemoryPositionStore()


@pytest.fixture
def gateway():
    return FakeOrderGateway()


@pytest.fixture
def rising_closes():
    return [100.0 + i for i in range(50)]


@pytest.fixture
def market_data(rising_closes):
    return FakeMarketData(closes={'AAPL': rising_closes, 'MSFT': rising_closes})
