"""
Exponential moving averages over closing price series.
"""
import math
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger

from ema_trader.models import EmaResult


DEFAULT_PERIODS = (5, 8, 22)


def sanitize_closes(closes: Optional[Iterable]) -> List[float]:
    """
    Drop None, non-numeric, NaN and infinite entries from a close series.

    Args:
        closes: Raw closing prices (oldest first)

    Returns:
        List of finite floats, order preserved
    """
    if closes is None:
        return []

    # Coerce everything numeric-looking, anything else becomes NaN
    series = pd.to_numeric(pd.Series(list(closes), dtype=object), errors='coerce')
    values = series.to_numpy(dtype=float)
    clean = values[np.isfinite(values)]

    dropped = len(values) - len(clean)
    if dropped:
        logger.warning(f"Dropped {dropped} invalid close values before EMA computation")

    return clean.tolist()


def ema_series(prices: Sequence[float], period: int, smoothing: float = 2.0) -> List[float]:
    """
    Compute the EMA series for one period.

    The first value is the simple moving average of the first `period`
    prices; each later value applies ema = price * k + ema * (1 - k) with
    k = smoothing / (period + 1).

    Args:
        prices: Closing prices (oldest first)
        period: EMA period
        smoothing: Smoothing factor (2 gives the standard EMA)

    Returns:
        EMA values, one per price from index period-1 onward; empty when
        there are fewer than `period` prices
    """
    if period <= 0:
        raise ValueError(f"EMA period must be positive, got {period}")
    if len(prices) < period:
        return []

    k = smoothing / (period + 1.0)
    ema = float(np.mean(prices[:period]))
    values = [ema]

    for price in prices[period:]:
        ema = price * k + ema * (1.0 - k)
        values.append(ema)

    return values


def calculate_ema(prices: Sequence[float], period: int) -> Optional[float]:
    """
    Calculate the most recent EMA value for a period.

    Args:
        prices: Closing prices (oldest first)
        period: EMA period

    Returns:
        Latest EMA value or None if there is not enough data
    """
    values = ema_series(prices, period)
    return values[-1] if values else None


def compute_emas(
    closes: Optional[Iterable],
    periods: Sequence[int] = DEFAULT_PERIODS
) -> Optional[Dict[int, EmaResult]]:
    """
    Compute EMAs for several periods at once.

    All-or-nothing: if the sanitized series is shorter than any requested
    period the result is None, never a partial mapping.

    Args:
        closes: Closing prices (oldest first); invalid entries are filtered
        periods: EMA periods to compute

    Returns:
        Mapping of period -> EmaResult, or None when data is insufficient
    """
    if not periods:
        return None

    prices = sanitize_closes(closes)
    longest = max(periods)

    if len(prices) < longest:
        logger.debug(
            f"Insufficient data for EMA({longest}): {len(prices)} valid closes"
        )
        return None

    results = {}
    for period in periods:
        values = ema_series(prices, period)
        if not values or not math.isfinite(values[-1]):
            return None
        results[period] = EmaResult(period=period, value=values[-1], values=values)

    return results
