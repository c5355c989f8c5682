"""
EMA crossover trading bot: wiring and command-line entry point.
"""
import argparse
import signal
import sys
import threading

from loguru import logger

from ema_trader.alpaca_client import AlpacaClient
from ema_trader.bot_state import BotStateRegistry
from ema_trader.config import SettingsRegistry, load_config, validate_config
from ema_trader.events import build_event_sink, emit
from ema_trader.exit_monitor import ExitMonitor
from ema_trader.logging_utils import setup_logging
from ema_trader.market_calendar import MarketCalendar
from ema_trader.market_data import AlpacaMarketData
from ema_trader.order_gateway import AlpacaOrderGateway
from ema_trader.order_reconciler import OrderStatusReconciler
from ema_trader.position_store import InMemoryPositionStore
from ema_trader.retry import RetryingFetcher
from ema_trader.scheduler import TradingScheduler
from ema_trader.trade_executor import TradeExecutor


class TradingBot:
    """
    Builds the engine from configuration and runs it on a schedule.
    """

    def __init__(self, config_path: str, verbose: bool = False):
        """
        Initialize trading bot.

        Args:
            config_path: Path to configuration file
            verbose: Force DEBUG logging
        """
        self.config = load_config(config_path)
        validate_config(self.config)

        logging_config = self.config.get('logging', {}) or {}
        setup_logging(
            logs_dir=(self.config.get('storage', {}) or {}).get('logs_dir', 'logs'),
            level='DEBUG' if verbose else logging_config.get('level', 'INFO'),
            rotation=logging_config.get('rotation', '1 day'),
            retention=logging_config.get('retention', '30 days'),
            format_type=logging_config.get('format', 'text')
        )

        logger.info("=" * 80)
        logger.info("EMA Trader Starting...")
        logger.info(f"Environment: {self.config.get('environment', 'paper')}")
        logger.info("=" * 80)

        alpaca = self.config['alpaca']
        self.client = AlpacaClient(
            key_id=alpaca['key_id'],
            secret_key=alpaca['secret_key'],
            base_url=alpaca['base_url'],
            data_feed=alpaca.get('data_feed', 'iex')
        )

        self.settings = SettingsRegistry(self.config)
        symbols = sorted({symbol for _, symbol in self.settings.tracked_pairs()})
        logger.info(f"Tracking {len(self.settings.tracked_pairs())} user/symbol pairs: {symbols}")

        self.event_sink = build_event_sink(self.config)
        self.bot_states = BotStateRegistry(symbols)
        for symbol in symbols:
            emit(self.event_sink, 'bot_start', f"Bot started for {symbol}", symbol=symbol)

        self.market_data = AlpacaMarketData(self.client)
        self.order_gateway = AlpacaOrderGateway(self.client, self.config.get('execution', {}))
        self.position_store = InMemoryPositionStore()
        self.calendar = MarketCalendar.from_config(self.config)
        self.fetcher = RetryingFetcher.from_config(self.config)

        self.executor = TradeExecutor(
            self.market_data,
            self.order_gateway,
            self.position_store,
            self.settings,
            calendar=self.calendar,
            fetcher=self.fetcher,
            bot_states=self.bot_states,
            event_sink=self.event_sink
        )
        self.exit_monitor = ExitMonitor(
            self.market_data,
            self.position_store,
            self.settings,
            fetcher=self.fetcher,
            order_gateway=self.order_gateway,
            event_sink=self.event_sink
        )
        self.reconciler = OrderStatusReconciler.from_config(
            self.config,
            self.order_gateway,
            self.position_store,
            settings=self.settings,
            event_sink=self.event_sink
        )
        self.scheduler = TradingScheduler(
            self.config,
            self.executor,
            self.exit_monitor,
            self.reconciler,
            self.settings,
            event_sink=self.event_sink
        )

        self._stop_event = threading.Event()

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully."""
        logger.warning(f"Received signal {signum} - initiating graceful shutdown...")
        self.stop()

    def run_once(self) -> None:
        """Run a single tick plus one reconcile pass, then return."""
        summary = self.scheduler.process_tick()
        self.scheduler.reconcile_due()
        self.reconciler.alert_unfilled()
        logger.info(f"Single run complete: {summary}")

    def start(self) -> None:
        """Start scheduled trading and block until stopped."""
        logger.info("=" * 80)
        logger.info("STARTING EMA TRADER")
        logger.info("=" * 80)

        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info(f"Job {job['id']} | next run: {job['next_run']} | {job['trigger']}")

        while not self._stop_event.is_set():
            self._stop_event.wait(1.0)

    def stop(self) -> None:
        """Stop scheduled trading. In-flight orders are left to complete."""
        if self._stop_event.is_set():
            return

        logger.info("=" * 80)
        logger.info("STOPPING EMA TRADER")
        logger.info("=" * 80)

        self.scheduler.stop()
        for symbol in sorted({symbol for _, symbol in self.settings.tracked_pairs()}):
            self.bot_states.stop(symbol)
            emit(self.event_sink, 'bot_stop', f"Bot stopped for {symbol}", symbol=symbol)

        pending = self.position_store.find_pending()
        if pending:
            logger.warning(f"{len(pending)} pending order(s) left to fill at the broker")

        self._stop_event.set()
        logger.info("EMA trader stopped")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="EMA 5/8/22 crossover trading bot")
    parser.add_argument(
        '--config',
        type=str,
        default='config/config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--once',
        action='store_true',
        help='Run a single tick and exit'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    try:
        bot = TradingBot(args.config, verbose=args.verbose)
        if args.once:
            bot.run_once()
        else:
            bot.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.opt(exception=e).critical(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
