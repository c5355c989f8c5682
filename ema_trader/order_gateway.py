"""
Order Gateway contract and its Alpaca implementation: notional market
buys with take-profit / stop-loss protection, status queries and exits.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from loguru import logger

from ema_trader.alpaca_client import AlpacaClient
from ema_trader.logging_utils import log_trade
from ema_trader.models import (
    OrderResult,
    OrderState,
    OrderStatusReport,
    Position,
    ProtectiveOrders,
)


class OrderGatewayError(Exception):
    """Broker rejected or failed an order request."""
    pass


def protective_prices(fill_price: float, profit_pct: float, loss_pct: float) -> Tuple[float, float]:
    """
    Compute take-profit and stop-loss trigger prices.

    Args:
        fill_price: Average fill price of the entry
        profit_pct: Take-profit distance in percent (2.0 = 2%)
        loss_pct: Stop-loss distance in percent

    Returns:
        Tuple of (take_profit_price, stop_loss_price), rounded to cents
    """
    take_profit = round(fill_price * (1 + profit_pct / 100.0), 2)
    stop_loss = round(fill_price * (1 - loss_pct / 100.0), 2)
    return take_profit, stop_loss


def _float_or_none(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


class OrderGateway(ABC):
    """
    Broker-facing operations the engine needs.
    """

    @abstractmethod
    def place_buy_with_safety(self, symbol: str, notional: float, profit_pct: float,
                              loss_pct: float) -> OrderResult:
        """
        Place a notional market buy; when it fills immediately also place
        protective orders.

        Raises:
            OrderGatewayError: If the buy could not be placed
        """

    @abstractmethod
    def get_order_status(self, order_id: str) -> OrderStatusReport:
        """
        Query an order.

        Raises:
            OrderGatewayError: If the status could not be retrieved
        """

    @abstractmethod
    def setup_safety_orders(self, symbol: str, fill_price: float, fill_qty: float, profit_pct: float,
                            loss_pct: float) -> ProtectiveOrders:
        """
        Place take-profit and stop-loss sell orders for a filled entry.

        Raises:
            OrderGatewayError: If either order could not be placed
        """

    @abstractmethod
    def close_position(self, position: Position) -> Optional[str]:
        """
        Cancel a position's protective orders and sell it at market.

        Returns:
            Exit order ID

        Raises:
            OrderGatewayError: If the sell could not be placed
        """


class AlpacaOrderGateway(OrderGateway):
    """
    Order gateway backed by the Alpaca trading API.
    """

    def __init__(self, client: AlpacaClient, config: Optional[Dict] = None):
        """
        Initialize gateway.

        Args:
            client: AlpacaClient instance
            config: `execution` configuration section
        """
        config = config or {}
        self.client = client
        self.entry_time_in_force = config.get('time_in_force', 'day')
        self.protective_time_in_force = config.get('protective_time_in_force', 'gtc')

        logger.info(
            f"AlpacaOrderGateway initialized | entry TIF: {self.entry_time_in_force}, "
            f"protective TIF: {self.protective_time_in_force}"
        )

    def _protective_tif(self, qty: float) -> str:
        # Alpaca only accepts fractional quantities on DAY orders
        if float(qty) != int(qty):
            return 'day'
        return self.protective_time_in_force

    def place_buy_with_safety(self, symbol: str, notional: float, profit_pct: float,
                              loss_pct: float) -> OrderResult:
        try:
            order = self.client.submit_order(
                symbol=symbol,
                notional=round(notional, 2),
                side='buy',
                type='market',
                time_in_force=self.entry_time_in_force
            )
        except Exception as e:
            raise OrderGatewayError(f"Order placement failed for {symbol}: {e}") from e

        status = OrderState.parse(order.status)
        fill_price = _float_or_none(getattr(order, 'filled_avg_price', None))
        fill_qty = _float_or_none(getattr(order, 'filled_qty', None))

        result = OrderResult(
            status=status,
            primary_order_id=str(order.id),
            symbol=symbol,
            amount=notional,
            fill_price=fill_price,
            fill_qty=fill_qty,
        )

        if status == OrderState.FILLED and fill_price and fill_qty:
            try:
                protective = self.setup_safety_orders(symbol, fill_price, fill_qty, profit_pct, loss_pct)
                result.take_profit_order_id = protective.take_profit_order_id
                result.stop_loss_order_id = protective.stop_loss_order_id
            except OrderGatewayError as e:
                # The entry stands even without protection
                logger.error(f"Protective orders failed for {symbol} order {order.id}: {e}")
        else:
            logger.info(f"Order {order.id} for {symbol} not filled yet, status: {order.status}")

        return result

    def get_order_status(self, order_id: str) -> OrderStatusReport:
        try:
            order = self.client.get_order(order_id)
        except Exception as e:
            raise OrderGatewayError(f"Error getting order status for {order_id}: {e}") from e

        return OrderStatusReport(
            order_id=str(order_id),
            status=OrderState.parse(order.status),
            filled_avg_price=_float_or_none(getattr(order, 'filled_avg_price', None)),
            filled_qty=_float_or_none(getattr(order, 'filled_qty', None)),
        )

    def setup_safety_orders(self, symbol: str, fill_price: float, fill_qty: float, profit_pct: float,
                            loss_pct: float) -> ProtectiveOrders:
        take_profit_price, stop_loss_price = protective_prices(fill_price, profit_pct, loss_pct)
        tif = self._protective_tif(fill_qty)

        try:
            take_profit = self.client.submit_order(
                symbol=symbol,
                qty=fill_qty,
                side='sell',
                type='limit',
                time_in_force=tif,
                limit_price=take_profit_price
            )
            stop_loss = self.client.submit_order(
                symbol=symbol,
                qty=fill_qty,
                side='sell',
                type='stop',
                time_in_force=tif,
                stop_price=stop_loss_price
            )
        except Exception as e:
            raise OrderGatewayError(f"Protective order placement failed for {symbol}: {e}") from e

        logger.info(
            f"ORDER protection | {symbol} | qty={fill_qty} | "
            f"TP: ${take_profit_price:.2f} ({take_profit.id}), SL: ${stop_loss_price:.2f} ({stop_loss.id})"
        )
        return ProtectiveOrders(
            take_profit_order_id=str(take_profit.id),
            stop_loss_order_id=str(stop_loss.id),
        )

    def close_position(self, position: Position) -> Optional[str]:
        for order_id in (position.take_profit_order_id, position.stop_loss_order_id):
            if not order_id:
                continue
            try:
                self.client.cancel_order(order_id)
            except Exception as e:
                # Already filled or cancelled broker-side
                logger.warning(f"Could not cancel protective order {order_id}: {e}")

        qty = position.shares
        try:
            order = self.client.submit_order(
                symbol=position.symbol,
                qty=qty,
                side='sell',
                type='market',
                time_in_force='day'
            )
        except Exception as e:
            raise OrderGatewayError(f"Exit order failed for position {position.id}: {e}") from e

        log_trade(
            action="EXIT_SUBMITTED",
            symbol=position.symbol,
            qty=qty,
            price=position.current_price or 0.0,
            position_id=position.id,
            order_id=order.id
        )
        return str(order.id)
