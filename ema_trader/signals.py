"""
EMA 5/8/22 crossover signal detection with N-bar confirmation.
"""
from typing import Dict, Mapping, Sequence

from loguru import logger

from ema_trader.models import EmaResult, SignalType


class SignalDetector:
    """
    Turns EMA series into buy/sell/none decisions.

    Entry conditions:
    - Uptrend alignment on the latest bar: EMA5 > EMA8 > EMA22
    - EMA5 above EMA8 for the last N bars, with the bar before that window
      at or below (the actual crossover) when the series is long enough

    Sell is the mirror image. Pure: no I/O, no state.
    """

    name = "ema_crossover"

    def __init__(
        self,
        confirmation_bars: int = 3,
        fast_period: int = 5,
        mid_period: int = 8,
        slow_period: int = 22
    ):
        """
        Initialize detector.

        Args:
            confirmation_bars: Consecutive bars required to confirm a crossover
                (0 disables confirmation)
            fast_period: Fast EMA period
            mid_period: Middle EMA period
            slow_period: Slow EMA period
        """
        if confirmation_bars < 0:
            raise ValueError("confirmation_bars must be >= 0")

        self.confirmation_bars = confirmation_bars
        self.fast_period = fast_period
        self.mid_period = mid_period
        self.slow_period = slow_period

    @property
    def periods(self) -> tuple:
        return (self.fast_period, self.mid_period, self.slow_period)

    @staticmethod
    def is_uptrend(ema5: float, ema8: float, ema22: float) -> bool:
        return ema5 > ema8 and ema8 > ema22

    @staticmethod
    def is_downtrend(ema5: float, ema8: float, ema22: float) -> bool:
        return ema5 < ema8 and ema8 < ema22

    def confirmed_crossover(
        self,
        fast_values: Sequence[float],
        mid_values: Sequence[float],
        bullish: bool = True
    ) -> bool:
        """
        Check for a crossover sustained over the confirmation window.

        Both series are aligned on their last element (the latest bar).

        Args:
            fast_values: Fast EMA series (oldest first)
            mid_values: Middle EMA series (oldest first)
            bullish: True to look for fast crossing above mid, False for below

        Returns:
            True if the crossover is confirmed
        """
        n = self.confirmation_bars
        history = min(len(fast_values), len(mid_values))

        def beyond(i: int) -> bool:
            if bullish:
                return fast_values[-i] > mid_values[-i]
            return fast_values[-i] < mid_values[-i]

        if n == 0:
            return history >= 1 and beyond(1)

        if history < n:
            return False

        for i in range(1, n + 1):
            if not beyond(i):
                return False

        # The bar right before the window must be the other side of the cross
        if history > n:
            return not beyond(n + 1)

        # Not enough history to see the cross itself; the window alone decides
        return True

    def evaluate(self, emas: Mapping[int, EmaResult]) -> SignalType:
        """
        Evaluate EMA results for a signal.

        Args:
            emas: Mapping of period -> EmaResult, as returned by compute_emas

        Returns:
            SignalType.BUY, SignalType.SELL or SignalType.NONE
        """
        try:
            fast = emas[self.fast_period]
            mid = emas[self.mid_period]
            slow = emas[self.slow_period]
        except (KeyError, TypeError):
            logger.debug(f"{self.name}: missing EMA periods, no signal")
            return SignalType.NONE

        if self.is_uptrend(fast.value, mid.value, slow.value):
            if self.confirmed_crossover(fast.values, mid.values, bullish=True):
                return SignalType.BUY
        elif self.is_downtrend(fast.value, mid.value, slow.value):
            if self.confirmed_crossover(fast.values, mid.values, bullish=False):
                return SignalType.SELL

        return SignalType.NONE

    def latest_values(self, emas: Mapping[int, EmaResult]) -> Dict[str, float]:
        """Latest EMA values keyed ema5/ema8/ema22 for records and logs."""
        return {
            'ema5': emas[self.fast_period].value,
            'ema8': emas[self.mid_period].value,
            'ema22': emas[self.slow_period].value,
        }
