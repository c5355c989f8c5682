"""
Order status reconciliation for pending positions.

Each check() call is one step of the state machine
pending -> open | cancelled. The caller (scheduler) drives repeated
checks using the returned delay; nothing here schedules itself.
"""
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from loguru import logger

from ema_trader.config import SettingsRegistry
from ema_trader.events import EventSink, emit
from ema_trader.logging_utils import log_error_with_context, log_trade
from ema_trader.models import FAILED_ORDER_STATES, OrderState, Position, PositionStatus
from ema_trader.order_gateway import OrderGateway
from ema_trader.position_store import PositionStore


class ReconcileOutcome(str, Enum):
    OPENED = "opened"
    CANCELLED = "cancelled"
    STILL_PENDING = "still_pending"
    ERROR = "error"
    NOT_PENDING = "not_pending"


class ReconcileResult:
    """Outcome of one check plus when to check again (None = stop polling)."""

    def __init__(self, outcome: ReconcileOutcome, next_check_in: Optional[float] = None,
                 message: str = ""):
        self.outcome = outcome
        self.next_check_in = next_check_in
        self.message = message

    @property
    def done(self) -> bool:
        return self.next_check_in is None

    def __repr__(self) -> str:
        return f"ReconcileResult({self.outcome.value}, next_check_in={self.next_check_in})"


class OrderStatusReconciler:
    """
    Resolves pending positions against the broker's order status and
    provisions protective orders once an entry fills.
    """

    def __init__(
        self,
        order_gateway: OrderGateway,
        position_store: PositionStore,
        settings: Optional[SettingsRegistry] = None,
        event_sink: Optional[EventSink] = None,
        poll_interval_seconds: float = 30.0,
        error_retry_seconds: float = 60.0,
        unfilled_alert_seconds: float = 120.0,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize reconciler.

        Args:
            order_gateway: Order Gateway
            position_store: Position Store
            settings: Per-user settings, used when a position carries no
                profit/loss percentages
            event_sink: Receiver of lifecycle and alert events
            poll_interval_seconds: Delay before rechecking a non-terminal order
            error_retry_seconds: Delay before rechecking after a query error
            unfilled_alert_seconds: Pending age that triggers an alert
            clock: Time source
        """
        self.order_gateway = order_gateway
        self.position_store = position_store
        self.settings = settings or SettingsRegistry()
        self.event_sink = event_sink
        self.poll_interval_seconds = poll_interval_seconds
        self.error_retry_seconds = error_retry_seconds
        self.unfilled_alert_seconds = unfilled_alert_seconds
        self.clock = clock

        self._alerted_orders: Set[str] = set()
        self._lock = threading.Lock()
        self.last_error: Optional[str] = None

        logger.info(
            f"OrderStatusReconciler initialized | poll: {poll_interval_seconds}s, "
            f"error retry: {error_retry_seconds}s, unfilled alert: {unfilled_alert_seconds}s"
        )

    @classmethod
    def from_config(cls, config: Dict, order_gateway: OrderGateway, position_store: PositionStore,
                    **kwargs) -> "OrderStatusReconciler":
        reconciler_config = config.get('reconciler', {}) or {}
        return cls(
            order_gateway,
            position_store,
            poll_interval_seconds=float(reconciler_config.get('poll_interval_seconds', 30)),
            error_retry_seconds=float(reconciler_config.get('error_retry_seconds', 60)),
            unfilled_alert_seconds=float(reconciler_config.get('unfilled_alert_seconds', 120)),
            **kwargs
        )

    def check(self, position_id: int) -> ReconcileResult:
        """
        Query the broker once for a pending position's entry order and
        apply the result.

        Args:
            position_id: Position ID

        Returns:
            ReconcileResult with the outcome and the delay before the next
            check (None when the position needs no more polling)
        """
        try:
            return self._check(position_id)
        except Exception as e:
            log_error_with_context(e, "OrderStatusReconciler.check", position_id=position_id)
            self.last_error = f"Reconcile failed for position {position_id}: {e}"
            return ReconcileResult(ReconcileOutcome.ERROR, self.error_retry_seconds, self.last_error)

    def _check(self, position_id: int) -> ReconcileResult:
        position = self.position_store.get(position_id)
        if position is None or position.status != PositionStatus.PENDING:
            return ReconcileResult(ReconcileOutcome.NOT_PENDING, message=f"Position {position_id} is not pending")

        if not position.primary_order_id:
            # Nothing at the broker can ever fill this
            self.position_store.update_status(position.id, PositionStatus.CANCELLED)
            self._emit_cancel(position, "no entry order id")
            return ReconcileResult(ReconcileOutcome.CANCELLED, message="no entry order id")

        try:
            report = self.order_gateway.get_order_status(position.primary_order_id)
        except Exception as e:
            self.last_error = f"Error checking order {position.primary_order_id}: {e}"
            logger.warning(f"{self.last_error}; rechecking in {self.error_retry_seconds:.0f}s")
            return ReconcileResult(ReconcileOutcome.ERROR, self.error_retry_seconds, self.last_error)

        if report.status == OrderState.FILLED and report.filled_avg_price:
            return self._open(position, report.filled_avg_price, report.filled_qty)

        if report.status in FAILED_ORDER_STATES:
            self.position_store.update_status(position.id, PositionStatus.CANCELLED)
            self._emit_cancel(position, f"order {report.status.value}")
            return ReconcileResult(ReconcileOutcome.CANCELLED, message=f"order {report.status.value}")

        logger.info(
            f"Order {position.primary_order_id} for {position.symbol} still {report.status.value}, "
            f"rechecking in {self.poll_interval_seconds:.0f}s"
        )
        return ReconcileResult(
            ReconcileOutcome.STILL_PENDING, self.poll_interval_seconds, f"order {report.status.value}"
        )

    def _open(self, position: Position, fill_price: float, fill_qty: Optional[float]) -> ReconcileResult:
        qty = fill_qty or position.amount / fill_price
        opened = self.position_store.update_status(
            position.id,
            PositionStatus.OPEN,
            entry_price=fill_price,
            fill_qty=qty,
            fill_notional=qty * fill_price,
            current_price=fill_price,
        )
        log_trade(
            action="BUY_FILLED",
            symbol=opened.symbol,
            qty=qty,
            price=fill_price,
            position_id=opened.id,
            order_id=opened.primary_order_id
        )

        settings = self.settings.settings_for(opened.user_id)
        profit_pct = opened.profit_percentage or settings.profit_percentage
        loss_pct = opened.loss_percentage or settings.loss_percentage

        try:
            protective = self.order_gateway.setup_safety_orders(opened.symbol, fill_price, qty, profit_pct, loss_pct)
            opened = self.position_store.update_fields(
                opened.id,
                take_profit_order_id=protective.take_profit_order_id,
                stop_loss_order_id=protective.stop_loss_order_id,
            )
        except Exception as e:
            # The fill stands without protection
            logger.error(f"Failed to set up protective orders for position {opened.id}: {e}")
            emit(
                self.event_sink, 'error', f"Protective orders failed for {opened.symbol}: {e}",
                symbol=opened.symbol, user_id=opened.user_id, level='error', position_id=opened.id
            )

        emit(
            self.event_sink, 'position_open', f"Opened {opened.symbol} at ${fill_price:.2f}",
            symbol=opened.symbol, user_id=opened.user_id, position_id=opened.id,
            fill_qty=qty, take_profit_order_id=opened.take_profit_order_id,
            stop_loss_order_id=opened.stop_loss_order_id
        )
        return ReconcileResult(ReconcileOutcome.OPENED, message=f"filled at {fill_price}")

    def _emit_cancel(self, position: Position, reason: str) -> None:
        logger.warning(f"Position {position.id} for {position.symbol} cancelled: {reason}")
        emit(
            self.event_sink, 'position_cancel', f"Position for {position.symbol} cancelled: {reason}",
            symbol=position.symbol, user_id=position.user_id, level='warning',
            position_id=position.id, order_id=position.primary_order_id
        )

    def reconcile_pending(self) -> Dict[int, ReconcileResult]:
        """
        Check every pending position once.

        Returns:
            Mapping of position ID -> ReconcileResult
        """
        results = {}
        for position in self.position_store.find_pending():
            results[position.id] = self.check(position.id)
        if results:
            logger.debug(f"Reconciled {len(results)} pending position(s)")
        return results

    def alert_unfilled(self, now: Optional[datetime] = None) -> List[str]:
        """
        Publish one warning per entry order pending longer than the alert
        threshold.

        Args:
            now: Evaluation time (defaults to the clock)

        Returns:
            Order IDs alerted on this call
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.unfilled_alert_seconds)
        alerted = []

        for position in self.position_store.find_pending():
            order_id = position.primary_order_id
            if not order_id or position.entry_time > cutoff:
                continue

            with self._lock:
                if order_id in self._alerted_orders:
                    continue
                self._alerted_orders.add(order_id)

            minutes = (now - position.entry_time).total_seconds() / 60.0
            emit(
                self.event_sink, 'unfilled_order',
                f"Order {order_id} for {position.symbol} unfilled after {minutes:.1f} minutes",
                symbol=position.symbol, user_id=position.user_id, level='warning',
                order_id=order_id, position_id=position.id, amount=position.amount
            )
            alerted.append(order_id)

        return alerted
