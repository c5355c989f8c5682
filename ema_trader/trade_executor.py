"""
Per-tick trading pipeline: market gate, fetch, EMA computation, signal
detection and guarded trade execution.
"""
import math
import threading
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from loguru import logger

from ema_trader.bot_state import BotStateRegistry
from ema_trader.config import SettingsRegistry, normalize_timeframe
from ema_trader.events import EventSink, emit
from ema_trader.indicators import compute_emas, sanitize_closes
from ema_trader.logging_utils import log_error_with_context, log_signal, log_trade
from ema_trader.market_calendar import MarketCalendar
from ema_trader.market_data import MarketDataSource
from ema_trader.models import (
    FAILED_ORDER_STATES,
    OrderResult,
    OrderState,
    Position,
    PositionStatus,
    SignalType,
    TradingSignal,
)
from ema_trader.order_gateway import OrderGateway
from ema_trader.position_store import PositionConflictError, PositionStore
from ema_trader.retry import RetryingFetcher
from ema_trader.signals import SignalDetector


# Entry price recorded for a pending order when no recent close is known
PLACEHOLDER_ENTRY_PRICE = 0.1


class TradeExecutor:
    """
    Runs the EMA crossover pipeline for one (symbol, user) per call and
    opens at most one active position per pair.

    run() and execute_trade() never raise; failures are returned as
    False/None with the reason in last_error.
    """

    def __init__(
        self,
        market_data: MarketDataSource,
        order_gateway: OrderGateway,
        position_store: PositionStore,
        settings: SettingsRegistry,
        calendar: Optional[MarketCalendar] = None,
        fetcher: Optional[RetryingFetcher] = None,
        bot_states: Optional[BotStateRegistry] = None,
        event_sink: Optional[EventSink] = None,
        history_size: int = 100,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize executor.

        Args:
            market_data: Market Data Source
            order_gateway: Order Gateway
            position_store: Position Store
            settings: Per-user trading settings
            calendar: Market hours gate
            fetcher: Retry wrapper for data calls
            bot_states: Run flags per symbol (None means always running)
            event_sink: Receiver of signal/position events
            history_size: EMA readings kept per symbol
            clock: Time source for the market gate
        """
        self.market_data = market_data
        self.order_gateway = order_gateway
        self.position_store = position_store
        self.settings = settings
        self.calendar = calendar or MarketCalendar()
        self.fetcher = fetcher or RetryingFetcher()
        self.bot_states = bot_states
        self.event_sink = event_sink
        self.clock = clock

        self._lock = threading.Lock()
        self._last_errors: Dict[Tuple[str, str], Optional[str]] = {}
        self.last_error: Optional[str] = None

        self.history_size = history_size
        self._ema_history: Dict[str, Deque[Dict]] = {}
        self._signals: List[TradingSignal] = []
        self._signal_keys: Set[Tuple[str, str, str, datetime]] = set()

        logger.info("TradeExecutor initialized")

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def _fail(self, symbol: str, user_id: str, message: str, level: str = "info") -> None:
        with self._lock:
            self._last_errors[(str(user_id), symbol)] = message
            self.last_error = message

        if level == "error":
            logger.error(f"{symbol}/{user_id}: {message}")
            emit(self.event_sink, 'error', message, symbol=symbol, user_id=user_id, level='error')
        else:
            logger.info(f"{symbol}/{user_id}: {message}")

    def _clear_error(self, symbol: str, user_id: str) -> None:
        with self._lock:
            self._last_errors[(str(user_id), symbol)] = None

    def last_error_for(self, symbol: str, user_id: str) -> Optional[str]:
        with self._lock:
            return self._last_errors.get((str(user_id), symbol))

    def ema_history(self, symbol: str) -> List[Dict]:
        """
        Recorded EMA readings for a symbol, oldest first.

        Each reading holds ema5, ema8, ema22, price and timestamp.
        """
        with self._lock:
            return list(self._ema_history.get(symbol, []))

    def signals(self, symbol: Optional[str] = None, user_id: Optional[str] = None) -> List[TradingSignal]:
        with self._lock:
            return [
                s for s in self._signals
                if (symbol is None or s.symbol == symbol) and (user_id is None or s.user_id == str(user_id))
            ]

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def run(self, symbol: str, timeframe: Optional[str] = None, user_id: str = "default") -> bool:
        """
        Run one tick of the pipeline for a symbol and user.

        Args:
            symbol: Stock symbol
            timeframe: Bar timeframe (user setting when None)
            user_id: User identifier

        Returns:
            True if the pipeline completed (whether or not a trade was made)
        """
        try:
            return self._run(symbol, timeframe, str(user_id))
        except Exception as e:
            log_error_with_context(e, "TradeExecutor.run", symbol=symbol, user=user_id)
            self._fail(symbol, user_id, f"Unexpected error: {e}", level="error")
            return False

    def _run(self, symbol: str, timeframe: Optional[str], user_id: str) -> bool:
        self._clear_error(symbol, user_id)

        if self.bot_states is not None and not self.bot_states.is_running(symbol):
            self._fail(symbol, user_id, f"Bot is not running for {symbol}")
            return False

        closed_reason = self.calendar.check(self.clock())
        if closed_reason:
            self._fail(symbol, user_id, closed_reason)
            return False

        settings = self.settings.settings_for(user_id)
        timeframe = normalize_timeframe(timeframe or settings.timeframe)

        result = self.fetcher.fetch_with_retry(
            lambda: self.market_data.get_closes(symbol, timeframe, settings.bars_limit),
            description=f"get_closes {symbol} {timeframe}"
        )
        if not result.ok:
            self._fail(symbol, user_id, f"Failed to fetch market data: {result.error}", level="error")
            return False

        series = result.data
        if not series.closes:
            self._fail(symbol, user_id, f"No closing prices returned for {symbol}")
            return False

        emit(
            self.event_sink, 'fetch', f"Fetched {len(series.closes)} {timeframe} bars",
            symbol=symbol, user_id=user_id, bars=len(series.closes), attempts=result.attempts
        )

        closes = sanitize_closes(series.closes)
        detector = SignalDetector(confirmation_bars=settings.confirmation_bars)
        emas = compute_emas(closes, detector.periods)
        if emas is None:
            self._fail(
                symbol, user_id,
                f"Insufficient data for EMA calculation: {len(closes)} valid closes, "
                f"need {max(detector.periods)}"
            )
            return False

        latest_price = closes[-1]
        values = detector.latest_values(emas)
        self._record_ema(symbol, user_id, values, latest_price, series.timestamp)

        signal_type = detector.evaluate(emas)
        if signal_type != SignalType.NONE:
            self._record_signal(symbol, user_id, signal_type, latest_price, values, series.timestamp)

        if signal_type == SignalType.BUY:
            self.execute_trade(symbol, user_id, reference_price=latest_price)

        if self.bot_states is not None:
            self.bot_states.record_run(symbol)
        return True

    def _record_ema(self, symbol: str, user_id: str, values: Dict[str, float], price: float,
                    timestamp: datetime) -> None:
        reading = {**values, 'price': price, 'timestamp': timestamp}
        with self._lock:
            history = self._ema_history.setdefault(symbol, deque(maxlen=self.history_size))
            history.append(reading)

        logger.debug(
            f"{symbol}: EMA5={values['ema5']:.4f} EMA8={values['ema8']:.4f} "
            f"EMA22={values['ema22']:.4f} price={price:.2f}"
        )
        emit(self.event_sink, 'ema_update', f"EMA update for {symbol}", symbol=symbol, user_id=user_id, **reading)

    def _record_signal(self, symbol: str, user_id: str, signal_type: SignalType, price: float,
                       values: Dict[str, float], timestamp: datetime) -> Optional[TradingSignal]:
        key = (user_id, symbol, signal_type.value, timestamp)
        with self._lock:
            if key in self._signal_keys:
                logger.debug(f"{symbol}: {signal_type.value} signal for bar {timestamp} already recorded")
                return None
            signal = TradingSignal(
                symbol=symbol,
                signal_type=signal_type,
                price=price,
                timestamp=timestamp,
                user_id=user_id,
                **values
            )
            self._signal_keys.add(key)
            self._signals.append(signal)

        log_signal(signal_type.value, symbol, price, user_id=user_id, **values)
        emit(
            self.event_sink, 'signal', f"{signal_type.value.upper()} signal for {symbol} at ${price:.2f}",
            symbol=symbol, user_id=user_id, signal_type=signal_type.value, price=price, **values
        )
        return signal

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_trade(self, symbol: str, user_id: str = "default",
                      reference_price: Optional[float] = None) -> Optional[Position]:
        """
        Place a buy and record the position, unless the pair already has
        an active one.

        The active-position check, the order and the position write happen
        inside the pair's critical section, so concurrent calls for the same
        (user, symbol) produce one position and the rest return None. Events
        are published after the section is released.

        Args:
            symbol: Stock symbol
            user_id: User identifier
            reference_price: Latest close, used as the entry price while an
                order is pending

        Returns:
            Created Position, or None when skipped or failed
        """
        user_id = str(user_id)
        try:
            with self.position_store.lock_for(user_id, symbol):
                existing = self.position_store.find_active(user_id, symbol)
                if existing is not None:
                    logger.info(
                        f"{symbol}/{user_id}: position {existing.id} already {existing.status.value}, skipping trade"
                    )
                    return None
                position, result, failure = self._place_and_record(symbol, user_id, reference_price)
        except Exception as e:
            log_error_with_context(e, "TradeExecutor.execute_trade", symbol=symbol, user=user_id)
            self._fail(symbol, user_id, f"Trade execution failed: {e}", level="error")
            return None

        if failure is not None:
            self._fail(symbol, user_id, failure, level="error")
            return None

        self._announce(position, result)
        return position

    def _place_and_record(
        self, symbol: str, user_id: str, reference_price: Optional[float]
    ) -> Tuple[Optional[Position], Optional[OrderResult], Optional[str]]:
        settings = self.settings.settings_for(user_id)

        try:
            result = self.order_gateway.place_buy_with_safety(
                symbol,
                settings.trade_amount,
                settings.profit_percentage,
                settings.loss_percentage
            )
        except Exception as e:
            return None, None, f"Order placement failed: {e}"

        if result.status in FAILED_ORDER_STATES:
            return None, result, f"Order {result.primary_order_id} was {result.status.value}, no position created"

        try:
            position = self._create_position(symbol, user_id, result, reference_price)
        except PositionConflictError as e:
            # Only reachable when something writes around the pair lock
            logger.error(f"{symbol}/{user_id}: order {result.primary_order_id} placed but {e}")
            return None, result, str(e)

        return position, result, None

    def _announce(self, position: Position, result: OrderResult) -> None:
        symbol, user_id = position.symbol, position.user_id

        if position.status == PositionStatus.OPEN:
            log_trade(
                action="BUY_FILLED",
                symbol=symbol,
                qty=position.fill_qty,
                price=position.entry_price,
                position_id=position.id,
                order_id=result.primary_order_id
            )
            emit(
                self.event_sink, 'position_open',
                f"Opened {symbol} at ${position.entry_price:.2f}",
                symbol=symbol, user_id=user_id, position_id=position.id,
                amount=position.amount, fill_qty=position.fill_qty
            )
        else:
            log_trade(
                action="BUY_PENDING",
                symbol=symbol,
                qty=0,
                price=position.entry_price,
                position_id=position.id,
                order_id=result.primary_order_id,
                status=result.status.value
            )
            emit(
                self.event_sink, 'order',
                f"Buy order {result.primary_order_id} for {symbol} is {result.status.value}",
                symbol=symbol, user_id=user_id, position_id=position.id,
                order_id=result.primary_order_id
            )

    def _create_position(self, symbol: str, user_id: str, result: OrderResult,
                         reference_price: Optional[float]) -> Position:
        settings = self.settings.settings_for(user_id)

        if result.status == OrderState.FILLED and result.fill_price and result.fill_qty:
            return self.position_store.create_pending_or_open(
                user_id,
                symbol,
                amount=result.amount,
                status=PositionStatus.OPEN,
                entry_price=result.fill_price,
                fill_qty=result.fill_qty,
                fill_notional=result.fill_qty * result.fill_price,
                current_price=result.fill_price,
                primary_order_id=result.primary_order_id,
                take_profit_order_id=result.take_profit_order_id,
                stop_loss_order_id=result.stop_loss_order_id,
                profit_percentage=settings.profit_percentage,
                loss_percentage=settings.loss_percentage,
            )

        entry_price = PLACEHOLDER_ENTRY_PRICE
        if reference_price is not None and math.isfinite(reference_price) and reference_price > 0:
            entry_price = reference_price

        return self.position_store.create_pending_or_open(
            user_id,
            symbol,
            amount=result.amount,
            status=PositionStatus.PENDING,
            entry_price=entry_price,
            primary_order_id=result.primary_order_id,
            profit_percentage=settings.profit_percentage,
            loss_percentage=settings.loss_percentage,
        )
