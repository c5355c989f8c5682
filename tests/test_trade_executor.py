import threading
from datetime import datetime

import pytest

from conftest import MARKET_OPEN_NOW, FakeMarketData, FakeOrderGateway, run_concurrently
from ema_trader.bot_state import BotStateRegistry
from ema_trader.config import SettingsRegistry
from ema_trader.events import RecordingEventSink
from ema_trader.models import CloseSeries, OrderState, PositionStatus, SignalType
from ema_trader.position_store import InMemoryPositionStore
from ema_trader.trade_executor import PLACEHOLDER_ENTRY_PRICE, TradeExecutor


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def make_executor(market_data, gateway, store, settings, calendar, fetcher, events):
    def _make(**overrides):
        kwargs = dict(
            market_data=market_data,
            order_gateway=gateway,
            position_store=store,
            settings=settings,
            calendar=calendar,
            fetcher=fetcher,
            event_sink=events,
            clock=lambda: MARKET_OPEN_NOW,
        )
        kwargs.update(overrides)
        return TradeExecutor(**kwargs)
    return _make


def test_buy_signal_opens_filled_position(make_executor, store, gateway, events):
    executor = make_executor()

    assert executor.run("AAPL", "5Min", "alice") is True

    position = store.find_active("alice", "AAPL")
    assert position.status == PositionStatus.OPEN
    assert position.entry_price == 100.0
    assert position.fill_qty == pytest.approx(10.0)
    assert position.fill_notional == pytest.approx(1000.0)
    assert position.take_profit_order_id and position.stop_loss_order_id
    assert gateway.buy_calls == 1
    assert [s.signal_type for s in executor.signals("AAPL")] == [SignalType.BUY]
    assert events.events('position_open')
    assert executor.last_error_for("AAPL", "alice") is None


def test_pending_order_creates_pending_position(make_executor, store, gateway, rising_closes):
    gateway.status = OrderState.ACCEPTED
    executor = make_executor()

    assert executor.run("AAPL", user_id="alice")

    position = store.find_active("alice", "AAPL")
    assert position.status == PositionStatus.PENDING
    assert position.entry_price == rising_closes[-1]
    assert position.entry_price > 0
    assert position.take_profit_order_id is None
    assert position.primary_order_id == "order-1"


def test_pending_without_reference_price_uses_placeholder(make_executor, store, gateway):
    gateway.status = OrderState.NEW
    position = make_executor().execute_trade("AAPL", "alice")
    assert position.status == PositionStatus.PENDING
    assert position.entry_price == PLACEHOLDER_ENTRY_PRICE


def test_trailing_invalid_close_is_not_used_as_price(make_executor, store, gateway):
    gateway.status = OrderState.ACCEPTED
    closes = [100.0 + i for i in range(49)] + [float('nan')]
    executor = make_executor(market_data=FakeMarketData(closes={'AAPL': closes}))

    assert executor.run("AAPL", "5Min", "alice") is True

    position = store.find_active("alice", "AAPL")
    assert position.status == PositionStatus.PENDING
    assert position.entry_price == 148.0
    assert executor.signals("AAPL")[0].price == 148.0
    assert executor.ema_history("AAPL")[-1]['price'] == 148.0


@pytest.mark.parametrize("reference_price", [float('nan'), float('inf'), 0.0])
def test_invalid_reference_price_uses_placeholder(make_executor, store, gateway, reference_price):
    gateway.status = OrderState.NEW
    position = make_executor().execute_trade("AAPL", "alice", reference_price=reference_price)
    assert position.entry_price == PLACEHOLDER_ENTRY_PRICE


def test_events_published_outside_pair_lock(make_executor, store):
    class LockCheckingSink(RecordingEventSink):
        """Records whether another thread could take the pair lock during publish."""

        def __init__(self):
            super().__init__()
            self.lock_free = []

        def publish(self, event):
            outcome = []

            def try_lock():
                lock = store._key_lock("alice", "AAPL")
                acquired = lock.acquire(timeout=0.5)
                if acquired:
                    lock.release()
                outcome.append(acquired)

            worker = threading.Thread(target=try_lock)
            worker.start()
            worker.join()
            self.lock_free.append((event.event_type, outcome[0]))
            super().publish(event)

    sink = LockCheckingSink()
    assert make_executor(event_sink=sink).execute_trade("AAPL", "alice") is not None
    assert ('position_open', True) in sink.lock_free


def test_concurrent_execute_trade_creates_one_position(make_executor, store):
    gateway = FakeOrderGateway(delay=0.02)
    executor = make_executor(order_gateway=gateway)

    results = run_concurrently(8, lambda _: executor.execute_trade("AAPL", "alice"))

    assert len([r for r in results if r is not None]) == 1
    assert len(store.all()) == 1
    assert gateway.buy_calls == 1


def test_concurrent_execute_trade_per_user(make_executor, store):
    gateway = FakeOrderGateway(delay=0.02)
    executor = make_executor(order_gateway=gateway)
    users = ["alice", "bob"]

    results = run_concurrently(2, lambda i: executor.execute_trade("AAPL", users[i]))

    assert all(r is not None for r in results)
    assert sorted(p.user_id for p in store.all()) == users


def test_concurrent_runs_same_pair(make_executor, store):
    gateway = FakeOrderGateway(delay=0.02)
    executor = make_executor(order_gateway=gateway)

    results = run_concurrently(6, lambda _: executor.run("AAPL", "5Min", "alice"))

    assert all(results)
    assert len(store.all()) == 1
    assert gateway.buy_calls == 1


def test_existing_active_position_skips_trade(make_executor, store, gateway):
    store.create_pending_or_open("alice", "AAPL", amount=1000.0, status=PositionStatus.OPEN, entry_price=99.0)
    assert make_executor().execute_trade("AAPL", "alice") is None
    assert gateway.buy_calls == 0


def test_gateway_failure_creates_nothing(make_executor, store, gateway, events):
    gateway.buy_error = RuntimeError("broker down")
    executor = make_executor()

    assert executor.run("AAPL", "5Min", "alice") is True

    assert store.all() == []
    assert "broker down" in executor.last_error_for("AAPL", "alice")
    assert events.events('error')


def test_rejected_order_creates_nothing(make_executor, store, gateway):
    gateway.status = OrderState.REJECTED
    assert make_executor().execute_trade("AAPL", "alice") is None
    assert store.all() == []


def test_market_closed_skips_fetch(make_executor, market_data):
    executor = make_executor(clock=lambda: datetime(2024, 3, 9, 12, 0))

    assert executor.run("AAPL", "5Min", "alice") is False
    assert executor.last_error == "Outside market hours: weekend"
    assert market_data.close_calls == 0


def test_stopped_bot_refuses_to_trade(make_executor, market_data, gateway):
    states = BotStateRegistry()
    executor = make_executor(bot_states=states)

    assert executor.run("AAPL", "5Min", "alice") is False
    assert "not running" in executor.last_error
    assert market_data.close_calls == 0
    assert gateway.buy_calls == 0

    states.start("AAPL")
    assert executor.run("AAPL", "5Min", "alice") is True
    assert states.get("AAPL").last_run_at is not None


def test_fetch_retried_then_succeeds(make_executor, market_data, store):
    market_data.errors = [TimeoutError("timeout"), TimeoutError("timeout")]
    executor = make_executor()

    assert executor.run("AAPL", "5Min", "alice") is True
    assert market_data.close_calls == 3
    assert store.find_active("alice", "AAPL") is not None


def test_fetch_exhaustion_fails_without_raising(make_executor, market_data, fetcher, gateway):
    market_data.always_raise = ConnectionError("refused")
    executor = make_executor()

    assert executor.run("AAPL", "5Min", "alice") is False
    assert market_data.close_calls == fetcher.max_retries + 1
    assert executor.last_error.startswith("Failed to fetch market data")
    assert gateway.buy_calls == 0


def test_insufficient_data(make_executor, gateway):
    data = FakeMarketData(closes={'AAPL': [100.0 + i for i in range(10)]})
    executor = make_executor(market_data=data)

    assert executor.run("AAPL", "5Min", "alice") is False
    assert "Insufficient data" in executor.last_error
    assert gateway.buy_calls == 0


def test_empty_close_series(make_executor):
    class EmptyData(FakeMarketData):
        def get_closes(self, symbol, timeframe, limit):
            return CloseSeries(symbol=symbol, timeframe=timeframe, closes=[], timestamp=MARKET_OPEN_NOW)

    executor = make_executor(market_data=EmptyData())
    assert executor.run("AAPL", "5Min", "alice") is False
    assert "No closing prices" in executor.last_error


def test_sell_signal_is_recorded_without_order(make_executor, gateway, store):
    data = FakeMarketData(closes={'AAPL': [200.0 - i for i in range(50)]})
    executor = make_executor(market_data=data)

    assert executor.run("AAPL", "5Min", "alice") is True
    assert [s.signal_type for s in executor.signals()] == [SignalType.SELL]
    assert gateway.buy_calls == 0
    assert store.all() == []


def test_signal_recorded_once_per_bar(make_executor):
    executor = make_executor()
    executor.run("AAPL", "5Min", "alice")
    executor.run("AAPL", "5Min", "alice")
    assert len(executor.signals("AAPL", "alice")) == 1


def test_ema_history_and_events(make_executor, events):
    executor = make_executor()
    executor.run("AAPL", "5Min", "alice")

    history = executor.ema_history("AAPL")
    assert len(history) == 1
    assert history[0]['ema5'] > history[0]['ema8'] > history[0]['ema22']
    assert events.events('ema_update')
    assert events.events('signal')


def test_confirmation_bars_from_user_settings(market_data, gateway, store, calendar, fetcher):
    settings = SettingsRegistry({'trading': {'confirmation_bars': 3}})
    executor = TradeExecutor(
        market_data, gateway, store, settings,
        calendar=calendar, fetcher=fetcher, clock=lambda: MARKET_OPEN_NOW
    )

    # A steady rise has no fresh crossover inside a 3-bar window
    assert executor.run("AAPL", "5Min", "alice") is True
    assert executor.signals() == []
    assert gateway.buy_calls == 0


def test_order_uses_user_settings(make_executor, gateway):
    settings = SettingsRegistry({
        'trading': {'confirmation_bars': 0},
        'users': {'alice': {'trade_amount': 250.0, 'profit_percentage': 3.0, 'loss_percentage': 1.5}},
    })
    position = make_executor(settings=settings).execute_trade("AAPL", "alice")

    assert position.amount == 250.0
    assert gateway.safety_calls[0][3:] == (3.0, 1.5)
    assert (position.profit_percentage, position.loss_percentage) == (3.0, 1.5)


def test_separate_stores_do_not_share_locks(make_executor):
    a = make_executor(position_store=InMemoryPositionStore())
    b = make_executor(position_store=InMemoryPositionStore())
    assert a.execute_trade("AAPL", "alice") is not None
    assert b.execute_trade("AAPL", "alice") is not None
