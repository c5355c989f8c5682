"""
Per-symbol run flags. Operators start and stop symbols; the engine only
reads the flag before starting new work.
"""
import threading
from datetime import datetime
from typing import Dict, Iterable, Optional

from loguru import logger

from ema_trader.models import BotState


class BotStateRegistry:
    """
    Thread-safe registry of BotState per symbol.
    """

    def __init__(self, running_symbols: Optional[Iterable[str]] = None):
        """
        Initialize registry.

        Args:
            running_symbols: Symbols that start in the running state
        """
        self._states: Dict[str, BotState] = {}
        self._lock = threading.Lock()

        for symbol in running_symbols or []:
            self._states[symbol] = BotState(symbol=symbol, running=True)

        logger.info(f"BotStateRegistry initialized | running: {sorted(self._states)}")

    def _state(self, symbol: str) -> BotState:
        state = self._states.get(symbol)
        if state is None:
            state = BotState(symbol=symbol)
            self._states[symbol] = state
        return state

    def start(self, symbol: str) -> None:
        with self._lock:
            state = self._state(symbol)
            state.running = True
            state.error_message = None
        logger.info(f"Bot started for {symbol}")

    def stop(self, symbol: str) -> None:
        with self._lock:
            self._state(symbol).running = False
        logger.info(f"Bot stopped for {symbol}")

    def log_error(self, symbol: str, message: str) -> None:
        """
        Record an error and stop the symbol.

        Args:
            symbol: Stock symbol
            message: Error description
        """
        with self._lock:
            state = self._state(symbol)
            state.error_message = message
            state.running = False
        logger.error(f"Bot stopped for {symbol} after error: {message}")

    def is_running(self, symbol: str) -> bool:
        with self._lock:
            state = self._states.get(symbol)
            return bool(state and state.running)

    def record_run(self, symbol: str, when: Optional[datetime] = None) -> None:
        with self._lock:
            self._state(symbol).last_run_at = when or datetime.now()

    def get(self, symbol: str) -> BotState:
        """
        Get a snapshot of a symbol's state.

        Args:
            symbol: Stock symbol

        Returns:
            Copy of the BotState (not running when unknown)
        """
        with self._lock:
            state = self._states.get(symbol)
            return state.model_copy() if state else BotState(symbol=symbol)
