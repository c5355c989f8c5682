"""
Alpaca API client wrapper. Thin layer over alpaca_trade_api.REST that
normalises broker objects and leaves retry policy to callers.
"""
import alpaca_trade_api as tradeapi
from alpaca_trade_api.rest import TimeFrame, TimeFrameUnit
from loguru import logger
from typing import List, Optional, Any
from datetime import datetime, timedelta, timezone


TIMEFRAME_MAP = {
    '1Min': TimeFrame(1, TimeFrameUnit.Minute),
    '5Min': TimeFrame(5, TimeFrameUnit.Minute),
    '15Min': TimeFrame(15, TimeFrameUnit.Minute),
    '30Min': TimeFrame(30, TimeFrameUnit.Minute),
    '1Hour': TimeFrame(1, TimeFrameUnit.Hour),
    '1Day': TimeFrame(1, TimeFrameUnit.Day),
}

# How far back to look so that `limit` bars of each timeframe are available
LOOKBACK = {
    '1Min': timedelta(days=3),
    '5Min': timedelta(days=5),
    '15Min': timedelta(days=10),
    '30Min': timedelta(days=15),
    '1Hour': timedelta(days=30),
    '1Day': timedelta(days=120),
}


class AlpacaClient:
    """
    Wrapper for the Alpaca Trading and Market Data APIs.
    """

    def __init__(
        self,
        key_id: str,
        secret_key: str,
        base_url: str,
        data_feed: str = "iex",
        api: Optional[Any] = None
    ):
        """
        Initialize Alpaca client.

        Args:
            key_id: API key ID
            secret_key: API secret key
            base_url: Base URL for API (paper or live)
            data_feed: Data feed type ("iex" or "sip")
            api: Pre-built REST object (skips connecting)
        """
        self.key_id = key_id
        self.secret_key = secret_key
        self.base_url = base_url
        self.data_feed = data_feed

        if api is not None:
            self.api = api
        else:
            self._connect()
        logger.info(f"Alpaca client initialized: {base_url}")

    def _connect(self) -> None:
        """Establish connection to Alpaca API."""
        try:
            self.api = tradeapi.REST(
                key_id=self.key_id,
                secret_key=self.secret_key,
                base_url=self.base_url
            )
            account = self.api.get_account()
            logger.info(f"Connected to Alpaca API | Account: {account.account_number}")
        except Exception as e:
            logger.error(f"Failed to connect to Alpaca API: {e}")
            raise

    def get_bars(
        self,
        symbol: str,
        timeframe: str,
        limit: int = 50,
        end: Optional[datetime] = None
    ) -> List[Any]:
        """
        Get the most recent raw bars, oldest first.

        Args:
            symbol: Stock symbol
            timeframe: "1Min", "5Min", "15Min", "30Min", "1Hour" or "1Day"
            limit: Maximum number of bars
            end: End of the window (defaults to now)

        Returns:
            List of Alpaca bar objects (possibly empty)

        Raises:
            alpaca_trade_api.rest.APIError: On API failure
            ValueError: On an unsupported timeframe
        """
        if timeframe not in TIMEFRAME_MAP:
            raise ValueError(f"Unsupported timeframe '{timeframe}'")

        end = end or datetime.now(timezone.utc)
        start = end - LOOKBACK[timeframe]

        bars = self.api.get_bars(
            symbol,
            TIMEFRAME_MAP[timeframe],
            start=start.isoformat(),
            end=end.isoformat(),
            limit=limit,
            feed=self.data_feed,
            sort='desc'
        )
        # Requested newest first so `limit` keeps the latest bars
        return list(reversed(list(bars)))

    def get_latest_bar(self, symbol: str) -> Optional[Any]:
        """
        Get the latest raw bar for a symbol.

        Args:
            symbol: Stock symbol

        Returns:
            Alpaca bar object or None
        """
        return self.api.get_latest_bar(symbol, feed=self.data_feed)

    def submit_order(self, **params) -> Any:
        """
        Submit an order.

        Args:
            **params: alpaca_trade_api.REST.submit_order keyword arguments

        Returns:
            Alpaca order object
        """
        order = self.api.submit_order(**params)
        logger.info(
            f"ORDER submitted | {params.get('side', '').upper()} {params.get('symbol')} | "
            f"type={params.get('type')} | id={order.id} | status={order.status}"
        )
        return order

    def get_order(self, order_id: str) -> Any:
        return self.api.get_order(order_id)

    def cancel_order(self, order_id: str) -> None:
        self.api.cancel_order(order_id)
        logger.info(f"ORDER cancelled | id={order_id}")
