"""
Data models shared across the trading engine.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SignalType(str, Enum):
    """Outcome of a signal evaluation."""
    NONE = "none"
    BUY = "buy"
    SELL = "sell"


class PositionStatus(str, Enum):
    """Position lifecycle states."""
    PENDING = "pending"
    OPEN = "open"
    CLOSED_PROFIT = "closed_profit"
    CLOSED_LOSS = "closed_loss"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (PositionStatus.PENDING, PositionStatus.OPEN)


class ExitReason(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    MANUAL = "manual"


class OrderState(str, Enum):
    """Broker-side order statuses the engine understands."""
    PENDING = "pending"
    NEW = "new"
    ACCEPTED = "accepted"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OrderState":
        """
        Map a raw broker status string onto an OrderState.

        Alpaca spells cancellation "canceled"; anything unrecognised maps
        to UNKNOWN so the caller keeps polling.
        """
        if value is None:
            return cls.UNKNOWN
        raw = str(value).lower().strip()
        if raw == "canceled":
            raw = "cancelled"
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


FAILED_ORDER_STATES = (OrderState.CANCELLED, OrderState.REJECTED, OrderState.EXPIRED)


class Bar(BaseModel):
    symbol: str
    ts: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
    vwap: Optional[float] = None


class CloseSeries(BaseModel):
    """Closing prices (oldest first) and the timestamp of the most recent bar."""
    symbol: str
    timeframe: str
    closes: List[float]
    timestamp: datetime


class EmaResult(BaseModel):
    """Final EMA value for one period plus the full computed series."""
    period: int
    value: float
    values: List[float]


class Position(BaseModel):
    """One buy and its eventual close."""
    id: int
    user_id: str
    symbol: str
    amount: float
    status: PositionStatus
    entry_price: float
    entry_time: datetime
    fill_qty: Optional[float] = None
    fill_notional: Optional[float] = None
    current_price: Optional[float] = None
    primary_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    exit_reason: Optional[ExitReason] = None
    profit_loss: Optional[float] = None
    profit_loss_percentage: Optional[float] = None
    profit_percentage: Optional[float] = None
    loss_percentage: Optional[float] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def shares(self) -> float:
        """Share quantity held, falling back to notional / entry price."""
        if self.fill_qty:
            return self.fill_qty
        if self.entry_price:
            return self.amount / self.entry_price
        return 0.0


class TradingSignal(BaseModel):
    """Immutable record of a detected crossover."""
    symbol: str
    signal_type: SignalType
    price: float
    ema5: float
    ema8: float
    ema22: float
    timestamp: datetime
    user_id: str

    model_config = {"frozen": True}


class BotState(BaseModel):
    symbol: str
    running: bool = False
    last_run_at: Optional[datetime] = None
    error_message: Optional[str] = None


class OrderResult(BaseModel):
    """Outcome of a buy-with-safety request."""
    status: OrderState
    primary_order_id: str
    symbol: str
    amount: float
    fill_price: Optional[float] = None
    fill_qty: Optional[float] = None
    take_profit_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None


class OrderStatusReport(BaseModel):
    order_id: str
    status: OrderState
    filled_avg_price: Optional[float] = None
    filled_qty: Optional[float] = None


class ProtectiveOrders(BaseModel):
    take_profit_order_id: Optional[str] = None
    stop_loss_order_id: Optional[str] = None


class TradeEvent(BaseModel):
    """Audit/notification event handed to an event sink."""
    event_type: str
    level: str = "info"
    message: str
    symbol: Optional[str] = None
    user_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=datetime.now)
