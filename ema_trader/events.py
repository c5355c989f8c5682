"""
Event sinks for signal and position lifecycle events.

The engine publishes fire-and-forget: a sink failure is logged and never
reaches the trading pipeline.
"""
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import requests
from loguru import logger

from ema_trader.models import TradeEvent


# Activity types the engine emits
EVENT_TYPES = (
    'fetch', 'signal', 'order', 'error', 'info', 'warning',
    'bot_start', 'bot_stop', 'position_open', 'position_close',
    'position_cancel', 'ema_update', 'unfilled_order',
)


class EventSink(ABC):
    """
    Base sink. Subclasses implement publish().
    """

    @abstractmethod
    def publish(self, event: TradeEvent) -> None:
        pass


class LoggingEventSink(EventSink):
    """Writes every event to the log at the event's level."""

    def publish(self, event: TradeEvent) -> None:
        where = "/".join(part for part in (event.user_id, event.symbol) if part)
        message = f"EVENT {event.event_type} | {where} | {event.message}"
        if event.level == "error":
            logger.error(message)
        elif event.level == "warning":
            logger.warning(message)
        else:
            logger.info(message)


class RecordingEventSink(EventSink):
    """
    Keeps published events in memory (bounded), newest last.
    """

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self._events: List[TradeEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: TradeEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self.max_events:
                del self._events[:len(self._events) - self.max_events]

    def events(self, event_type: Optional[str] = None) -> List[TradeEvent]:
        with self._lock:
            if event_type is None:
                return list(self._events)
            return [e for e in self._events if e.event_type == event_type]


class SlackEventSink(EventSink):
    """
    Posts selected events to a Slack incoming webhook, with throttling and
    deduplication to prevent alert spam.
    """

    COLORS = {
        'info': '#36a64f',
        'warning': '#ff9900',
        'error': '#ff0000',
    }

    def __init__(
        self,
        webhook_url: str,
        event_types: Optional[List[str]] = None,
        max_alerts_per_minute: int = 10,
        dedupe_window_seconds: int = 300,
        timeout: float = 5.0
    ):
        """
        Initialize Slack sink.

        Args:
            webhook_url: Slack incoming webhook URL
            event_types: Event types to forward (all when None)
            max_alerts_per_minute: Throttle limit
            dedupe_window_seconds: Window in which identical events are dropped
            timeout: HTTP timeout in seconds
        """
        self.webhook_url = webhook_url
        self.event_types = set(event_types) if event_types else None
        self.max_alerts_per_minute = max_alerts_per_minute
        self.dedupe_window_seconds = dedupe_window_seconds
        self.timeout = timeout

        self.recent_alerts: List[datetime] = []
        self.alert_hashes: Dict[str, datetime] = {}
        self._lock = threading.Lock()

        logger.info(f"SlackEventSink initialized | types: {sorted(self.event_types) if self.event_types else 'all'}")

    def _should_send(self, event: TradeEvent) -> bool:
        now = datetime.now()
        alert_hash = f"{event.event_type}:{event.user_id}:{event.symbol}:{event.message}"

        with self._lock:
            cutoff = now - timedelta(seconds=self.dedupe_window_seconds)
            self.alert_hashes = {h: t for h, t in self.alert_hashes.items() if t > cutoff}
            if alert_hash in self.alert_hashes:
                logger.debug(f"Duplicate alert suppressed: {alert_hash}")
                return False

            minute_ago = now - timedelta(minutes=1)
            self.recent_alerts = [t for t in self.recent_alerts if t > minute_ago]
            if len(self.recent_alerts) >= self.max_alerts_per_minute:
                logger.warning(f"Alert throttled: {len(self.recent_alerts)} alerts in last minute")
                return False

            self.alert_hashes[alert_hash] = now
            self.recent_alerts.append(now)
            return True

    def publish(self, event: TradeEvent) -> None:
        if self.event_types is not None and event.event_type not in self.event_types:
            return
        if not self._should_send(event):
            return

        fields = [
            {'title': key, 'value': str(value), 'short': True}
            for key, value in event.details.items()
        ]
        if event.symbol:
            fields.insert(0, {'title': 'symbol', 'value': event.symbol, 'short': True})

        payload = {
            'attachments': [{
                'color': self.COLORS.get(event.level, '#808080'),
                'title': event.event_type.replace('_', ' ').title(),
                'text': event.message,
                'fields': fields,
                'footer': 'EMA Trader',
                'ts': int(event.occurred_at.timestamp())
            }]
        }

        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.debug(f"Slack alert sent: {event.event_type}")


class CompositeEventSink(EventSink):
    """Fans an event out to several sinks; one failing sink does not stop the rest."""

    def __init__(self, sinks: List[EventSink]):
        self.sinks = list(sinks)

    def publish(self, event: TradeEvent) -> None:
        for sink in self.sinks:
            safe_publish(sink, event)


def safe_publish(sink: Optional[EventSink], event: TradeEvent) -> None:
    """
    Publish an event, logging instead of raising on sink failure.

    Args:
        sink: Event sink (None is a no-op)
        event: Event to publish
    """
    if sink is None:
        return
    try:
        sink.publish(event)
    except Exception as e:
        logger.error(f"Event sink {type(sink).__name__} failed for {event.event_type}: {e}")


def emit(
    sink: Optional[EventSink],
    event_type: str,
    message: str,
    symbol: Optional[str] = None,
    user_id: Optional[str] = None,
    level: str = "info",
    **details
) -> None:
    """Build a TradeEvent and publish it fire-and-forget."""
    if event_type not in EVENT_TYPES:
        logger.warning(f"Unknown event type '{event_type}'")
    safe_publish(sink, TradeEvent(
        event_type=event_type,
        level=level,
        message=message,
        symbol=symbol,
        user_id=user_id,
        details=details,
    ))


def build_event_sink(config: Dict) -> EventSink:
    """
    Build the event sink chain from the `events` config section.

    Args:
        config: Full application configuration

    Returns:
        EventSink (logging only, or logging plus Slack)
    """
    events_config = config.get('events', {}) or {}
    sinks: List[EventSink] = [LoggingEventSink()]

    webhook = events_config.get('slack_webhook_url')
    if webhook:
        sinks.append(SlackEventSink(
            webhook_url=webhook,
            event_types=events_config.get('slack_event_types'),
            max_alerts_per_minute=int(events_config.get('max_alerts_per_minute', 10)),
            dedupe_window_seconds=int(events_config.get('dedupe_window_seconds', 300)),
        ))

    return CompositeEventSink(sinks)
