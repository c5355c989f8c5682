"""
Take-profit / stop-loss evaluation for open positions.
"""
from datetime import datetime
from typing import Callable, Optional, Tuple

from loguru import logger

from ema_trader.config import SettingsRegistry
from ema_trader.events import EventSink, emit
from ema_trader.logging_utils import log_error_with_context, log_trade
from ema_trader.market_data import MarketDataSource
from ema_trader.models import ExitReason, Position, PositionStatus
from ema_trader.order_gateway import OrderGateway
from ema_trader.position_store import PositionStore
from ema_trader.retry import RetryingFetcher


# Absorbs float noise so an exact threshold move (100 -> 102 at 2%) triggers
THRESHOLD_EPSILON = 1e-9


def evaluate_exit(entry_price: float, latest: float, profit_pct: float,
                  loss_pct: float) -> Tuple[Optional[ExitReason], float]:
    """
    Decide whether a position should exit at the latest price.

    Args:
        entry_price: Position entry price
        latest: Latest close
        profit_pct: Take-profit threshold in percent
        loss_pct: Stop-loss threshold in percent

    Returns:
        Tuple of (exit reason or None, pnl fraction)
    """
    pnl = (latest - entry_price) / entry_price

    if pnl >= profit_pct / 100.0 - THRESHOLD_EPSILON:
        return ExitReason.TAKE_PROFIT, pnl
    if pnl <= -loss_pct / 100.0 + THRESHOLD_EPSILON:
        return ExitReason.STOP_LOSS, pnl
    return None, pnl


class ExitMonitor:
    """
    Closes open positions for a (symbol, user) when the latest price
    crosses the user's profit or loss threshold.
    """

    def __init__(
        self,
        market_data: MarketDataSource,
        position_store: PositionStore,
        settings: SettingsRegistry,
        fetcher: Optional[RetryingFetcher] = None,
        order_gateway: Optional[OrderGateway] = None,
        event_sink: Optional[EventSink] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize exit monitor.

        Args:
            market_data: Market Data Source
            position_store: Position Store
            settings: Per-user trading settings
            fetcher: Retry wrapper for the latest-bar call
            order_gateway: When set, exits are sent to the broker before the
                position is closed
            event_sink: Receiver of position_close events
            clock: Time source for exit_time
        """
        self.market_data = market_data
        self.position_store = position_store
        self.settings = settings
        self.fetcher = fetcher or RetryingFetcher()
        self.order_gateway = order_gateway
        self.event_sink = event_sink
        self.clock = clock
        self.last_error: Optional[str] = None

        logger.info(f"ExitMonitor initialized | broker exits: {order_gateway is not None}")

    def check_exits(self, symbol: str, user_id: str = "default") -> bool:
        """
        Evaluate every open position for the symbol and user.

        Args:
            symbol: Stock symbol
            user_id: User identifier

        Returns:
            True if at least one position was closed
        """
        user_id = str(user_id)
        try:
            positions = self.position_store.find_all_open(symbol, user_id)
            if not positions:
                return False

            result = self.fetcher.fetch_with_retry(
                lambda: self.market_data.get_latest_bar(symbol),
                description=f"get_latest_bar {symbol}"
            )
            if not result.ok:
                self.last_error = f"Failed to fetch latest price for {symbol}: {result.error}"
                logger.warning(f"{self.last_error}; leaving {len(positions)} position(s) untouched")
                return False

            latest = float(result.data.close)
        except Exception as e:
            log_error_with_context(e, "ExitMonitor.check_exits", symbol=symbol, user=user_id)
            self.last_error = f"Exit check failed for {symbol}: {e}"
            return False

        settings = self.settings.settings_for(user_id)
        closed_any = False

        for position in positions:
            try:
                if self._check_position(position, latest, settings.profit_percentage, settings.loss_percentage):
                    closed_any = True
            except Exception as e:
                # Keep evaluating the rest of the batch
                log_error_with_context(e, "ExitMonitor position check", position_id=position.id, symbol=symbol)
                self.last_error = f"Position {position.id}: {e}"

        return closed_any

    def _check_position(self, position: Position, latest: float, profit_pct: float, loss_pct: float) -> bool:
        with self.position_store.lock_for(position.user_id, position.symbol):
            # Another caller may have closed it since the unlocked read
            current = self.position_store.get(position.id)
            if current is None or current.status != PositionStatus.OPEN:
                logger.debug(f"{position.symbol}: position {position.id} no longer open, skipping")
                return False

            # Thresholds stored on the position at entry win over current settings
            profit_pct = current.profit_percentage or profit_pct
            loss_pct = current.loss_percentage or loss_pct

            reason, pnl = evaluate_exit(current.entry_price, latest, profit_pct, loss_pct)
            if reason is None:
                self.position_store.update_fields(current.id, current_price=latest)
                logger.debug(
                    f"{current.symbol}: position {current.id} holding at ${latest:.2f} ({pnl * 100:+.2f}%)"
                )
                return False

            if self.order_gateway is not None:
                # Raises on failure; the position stays open
                self.order_gateway.close_position(current.model_copy(update={'current_price': latest}))

            status = PositionStatus.CLOSED_PROFIT if reason == ExitReason.TAKE_PROFIT else PositionStatus.CLOSED_LOSS
            shares = current.shares
            closed = self.position_store.close(
                current.id,
                status=status,
                exit_price=latest,
                exit_reason=reason,
                profit_loss=shares * (latest - current.entry_price),
                profit_loss_percentage=pnl * 100,
                exit_time=self.clock(),
            )

        log_trade(
            action="CLOSED",
            symbol=closed.symbol,
            qty=shares,
            price=latest,
            position_id=closed.id,
            reason=reason.value,
            pnl=f"{closed.profit_loss:.2f}"
        )
        emit(
            self.event_sink, 'position_close',
            f"Closed {closed.symbol} ({reason.value}) at ${latest:.2f}, P&L ${closed.profit_loss:.2f}",
            symbol=closed.symbol, user_id=closed.user_id, position_id=closed.id,
            exit_reason=reason.value, profit_loss=closed.profit_loss,
            profit_loss_percentage=closed.profit_loss_percentage
        )
        return True
