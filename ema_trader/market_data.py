"""
Market Data Source contract and its Alpaca implementation.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional

from loguru import logger

from ema_trader.alpaca_client import AlpacaClient
from ema_trader.models import Bar, CloseSeries


class MarketDataSource(ABC):
    """
    Source of recent prices. Implementations may raise on transport
    failures (the retry layer classifies them) and return None when the
    venue has no bars to give.
    """

    @abstractmethod
    def get_closes(self, symbol: str, timeframe: str, limit: int) -> Optional[CloseSeries]:
        """
        Get recent closing prices, oldest first.

        Args:
            symbol: Stock symbol
            timeframe: Bar timeframe ("5Min", ...)
            limit: Maximum number of bars

        Returns:
            CloseSeries or None when no bars are available
        """

    @abstractmethod
    def get_latest_bar(self, symbol: str) -> Optional[Bar]:
        """
        Get the single most recent bar.

        Args:
            symbol: Stock symbol

        Returns:
            Bar or None when no bar is available
        """


def _to_bar(symbol: str, raw: Any) -> Bar:
    timestamp = getattr(raw, 't', None) or datetime.now()
    if hasattr(timestamp, 'to_pydatetime'):
        timestamp = timestamp.to_pydatetime()
    return Bar(
        symbol=getattr(raw, 'S', None) or symbol,
        ts=timestamp,
        open=float(raw.o),
        high=float(raw.h),
        low=float(raw.l),
        close=float(raw.c),
        volume=int(raw.v or 0),
        vwap=float(raw.vw) if getattr(raw, 'vw', None) is not None else None,
    )


class AlpacaMarketData(MarketDataSource):
    """
    Alpaca-backed market data.
    """

    def __init__(self, client: AlpacaClient):
        """
        Initialize market data source.

        Args:
            client: AlpacaClient instance
        """
        self.client = client

    def get_bars(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        """
        Get recent bars as standardized Bar objects, oldest first.

        Bars that fail to convert are skipped with a warning.
        """
        bars = []
        for raw in self.client.get_bars(symbol, timeframe, limit=limit):
            try:
                bars.append(_to_bar(symbol, raw))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Error converting bar for {symbol}: {e}")
        return bars

    def get_closes(self, symbol: str, timeframe: str, limit: int) -> Optional[CloseSeries]:
        bars = self.get_bars(symbol, timeframe, limit)
        if not bars:
            logger.warning(f"No bars returned for {symbol} ({timeframe}); market closed or data gap")
            return None

        latest = bars[-1].ts
        age_minutes = (datetime.now(latest.tzinfo) - latest).total_seconds() / 60.0
        logger.debug(f"Fetched {len(bars)} {timeframe} bars for {symbol} | latest {latest} ({age_minutes:.1f} min old)")

        return CloseSeries(
            symbol=symbol,
            timeframe=timeframe,
            closes=[bar.close for bar in bars],
            timestamp=latest,
        )

    def get_latest_bar(self, symbol: str) -> Optional[Bar]:
        raw = self.client.get_latest_bar(symbol)
        if raw is None:
            return None
        return _to_bar(symbol, raw)
