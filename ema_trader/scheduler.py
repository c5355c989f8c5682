"""
Scheduler that drives the engine: trading ticks, pending-order
reconciliation and unfilled-order alerts.
"""
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytz
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from ema_trader.config import SettingsRegistry, normalize_timeframe
from ema_trader.events import EventSink, emit
from ema_trader.exit_monitor import ExitMonitor
from ema_trader.order_reconciler import OrderStatusReconciler
from ema_trader.trade_executor import TradeExecutor


# Cron fields per bar timeframe; ticks line up with bar closes
TIMEFRAME_CRON = {
    '1Min': {'minute': '*'},
    '5Min': {'minute': '*/5'},
    '15Min': {'minute': '*/15'},
    '30Min': {'minute': '*/30'},
    '1Hour': {'minute': '0'},
    '1Day': {'hour': '15', 'minute': '55'},
}


def cron_for_interval(timeframe: str) -> Dict[str, str]:
    """
    Get CronTrigger fields for a bar timeframe.

    Args:
        timeframe: Timeframe in Alpaca or short form ("5Min", "5m")

    Returns:
        Dict of CronTrigger keyword arguments (weekdays only)
    """
    fields = dict(TIMEFRAME_CRON[normalize_timeframe(timeframe)])
    fields['day_of_week'] = 'mon-fri'
    return fields


class TradingScheduler:
    """
    Runs trading ticks for every tracked (user, symbol) pair and keeps
    pending orders reconciled.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        executor: TradeExecutor,
        exit_monitor: ExitMonitor,
        reconciler: OrderStatusReconciler,
        settings: SettingsRegistry,
        event_sink: Optional[EventSink] = None
    ):
        """
        Initialize scheduler.

        Args:
            config: Full application configuration
            executor: TradeExecutor
            exit_monitor: ExitMonitor
            reconciler: OrderStatusReconciler
            settings: Settings registry supplying the tracked pairs
            event_sink: Receiver of failure events
        """
        scheduler_config = config.get('scheduler', {}) or {}

        self.enabled = scheduler_config.get('enabled', True)
        self.timezone = pytz.timezone(scheduler_config.get('timezone', 'America/New_York'))
        self.poll_interval = scheduler_config.get('poll_interval', settings.default_settings.timeframe)
        self.unfilled_check_seconds = int(scheduler_config.get('unfilled_check_seconds', 60))

        self.executor = executor
        self.exit_monitor = exit_monitor
        self.reconciler = reconciler
        self.settings = settings
        self.event_sink = event_sink

        self.scheduler = BackgroundScheduler(timezone=self.timezone)
        self._next_checks: Dict[int, datetime] = {}
        self._reconcile_lock = threading.Lock()

        logger.info(
            f"TradingScheduler initialized | Enabled: {self.enabled}, TZ: {self.timezone}, "
            f"poll: {self.poll_interval}"
        )

    def process_tick(self) -> Dict[str, int]:
        """
        Run the pipeline and the exit check for every tracked pair.

        A failing pair is logged and skipped; the others still run.

        Returns:
            Summary dict with processed and failed counts
        """
        pairs = self.settings.tracked_pairs()
        processed = 0
        failed = 0

        for user_id, symbol in pairs:
            settings = self.settings.settings_for(user_id)
            try:
                ok = self.executor.run(symbol, settings.timeframe, user_id)
                self.exit_monitor.check_exits(symbol, user_id)
            except Exception as e:
                logger.error(f"Tick failed for {user_id}/{symbol}: {e}")
                emit(
                    self.event_sink, 'error', f"Tick failed: {e}",
                    symbol=symbol, user_id=user_id, level='error'
                )
                failed += 1
                continue

            if ok:
                processed += 1
            else:
                reason = self.executor.last_error_for(symbol, user_id)
                logger.debug(f"Tick skipped for {user_id}/{symbol}: {reason}")
                failed += 1

        logger.info(f"Tick complete | pairs: {len(pairs)}, processed: {processed}, failed: {failed}")
        return {'processed': processed, 'failed': failed}

    def reconcile_due(self, now: Optional[datetime] = None) -> int:
        """
        Check pending positions whose next check time has come.

        Returns:
            Number of positions checked
        """
        now = now or datetime.now()
        checked = 0

        with self._reconcile_lock:
            pending_ids = {p.id for p in self.reconciler.position_store.find_pending()}
            # Forget positions that left pending elsewhere
            self._next_checks = {pid: t for pid, t in self._next_checks.items() if pid in pending_ids}

            for position_id in sorted(pending_ids):
                due = self._next_checks.get(position_id)
                if due is not None and due > now:
                    continue

                result = self.reconciler.check(position_id)
                checked += 1
                if result.done:
                    self._next_checks.pop(position_id, None)
                else:
                    self._next_checks[position_id] = now + timedelta(seconds=result.next_check_in)

        return checked

    def _run_job(self, name: str, func) -> None:
        try:
            func()
        except Exception as e:
            logger.error(f"Error in scheduled job {name}: {e}")

    def start(self) -> None:
        """Start the scheduler with the trading, reconcile and alert jobs."""
        if not self.enabled:
            logger.info("Scheduler is disabled")
            return

        cron = cron_for_interval(self.poll_interval)
        self.scheduler.add_job(
            func=lambda: self._run_job('trading_tick', self.process_tick),
            trigger=CronTrigger(timezone=self.timezone, **cron),
            id='trading_tick',
            name='EMA Trading Tick',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        logger.info(f"Scheduled trading tick: {cron}")

        self.scheduler.add_job(
            func=lambda: self._run_job('reconcile_orders', self.reconcile_due),
            trigger=IntervalTrigger(seconds=max(1, int(self.reconciler.poll_interval_seconds))),
            id='reconcile_orders',
            name='Pending Order Reconciliation',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.add_job(
            func=lambda: self._run_job('unfilled_alerts', self.reconciler.alert_unfilled),
            trigger=IntervalTrigger(seconds=self.unfilled_check_seconds),
            id='unfilled_alerts',
            name='Unfilled Order Alerts',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped")

    def get_jobs(self) -> List[Dict]:
        """
        Get list of scheduled jobs.

        Returns:
            List of job information dicts
        """
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger)
            })
        return jobs
