"""
Venue trading-hours gate: weekends, session window and exchange holidays.
"""
from datetime import date, datetime, time
from functools import lru_cache
from typing import Dict, Optional, Tuple

import pandas as pd
import pytz
from loguru import logger
from pandas.tseries.holiday import (
    AbstractHolidayCalendar,
    GoodFriday,
    Holiday,
    USLaborDay,
    USMartinLutherKingJr,
    USMemorialDay,
    USPresidentsDay,
    USThanksgivingDay,
    nearest_workday,
    sunday_to_monday,
)


class NYSEHolidayCalendar(AbstractHolidayCalendar):
    """
    Full-day NYSE closures.

    New Year's Day only moves forward (Sunday -> Monday); the exchange does
    not close the preceding Friday when Jan 1 is a Saturday.
    """
    rules = [
        Holiday("New Year's Day", month=1, day=1, observance=sunday_to_monday),
        USMartinLutherKingJr,
        USPresidentsDay,
        GoodFriday,
        USMemorialDay,
        Holiday("Juneteenth", month=6, day=19, start_date="2022-01-01", observance=nearest_workday),
        Holiday("Independence Day", month=7, day=4, observance=nearest_workday),
        USLaborDay,
        USThanksgivingDay,
        Holiday("Christmas Day", month=12, day=25, observance=nearest_workday),
    ]


# pandas ships some rules with generic names
_HOLIDAY_NAMES = {
    "Birthday of Martin Luther King, Jr.": "Martin Luther King Jr. Day",
    "Washington's Birthday": "Presidents' Day",
    "Memorial Day": "Memorial Day",
    "Labor Day": "Labor Day",
    "Thanksgiving Day": "Thanksgiving Day",
    "Good Friday": "Good Friday",
}


@lru_cache(maxsize=32)
def _holidays_for_year(year: int) -> Dict[date, str]:
    calendar = NYSEHolidayCalendar()
    holidays = calendar.holidays(
        start=pd.Timestamp(year=year, month=1, day=1),
        end=pd.Timestamp(year=year, month=12, day=31),
        return_name=True,
    )
    return {
        ts.date(): _HOLIDAY_NAMES.get(name, name)
        for ts, name in holidays.items()
    }


class MarketCalendar:
    """
    Decides whether the venue is open at a given instant.

    Everything is evaluated in venue-local wall-clock time so daylight-saving
    changes need no special handling.
    """

    WEEKEND = "weekend"
    BEFORE_OPEN = "before market open"
    AFTER_CLOSE = "after market close"
    OPEN = "open"

    def __init__(
        self,
        timezone: str = "America/New_York",
        open_time: time = time(9, 30),
        close_time: time = time(16, 0),
        extra_holidays: Optional[Dict[date, str]] = None
    ):
        """
        Initialize calendar.

        Args:
            timezone: Venue timezone name
            open_time: Session open (inclusive), venue-local
            close_time: Session close (exclusive), venue-local
            extra_holidays: Additional closure dates mapped to a name
        """
        self.timezone = timezone
        self.open_time = open_time
        self.close_time = close_time
        self.extra_holidays = dict(extra_holidays or {})

    @classmethod
    def from_config(cls, config: Dict) -> "MarketCalendar":
        """
        Build a calendar from the `market` config section.

        Args:
            config: Full application configuration

        Returns:
            MarketCalendar instance
        """
        market = config.get('market', {}) or {}
        open_h, open_m = map(int, str(market.get('open', '09:30')).split(':'))
        close_h, close_m = map(int, str(market.get('close', '16:00')).split(':'))
        extra = {
            pd.Timestamp(day).date(): name
            for day, name in (market.get('extra_holidays', {}) or {}).items()
        }
        return cls(
            timezone=market.get('timezone', 'America/New_York'),
            open_time=time(open_h, open_m),
            close_time=time(close_h, close_m),
            extra_holidays=extra,
        )

    def holiday_name(self, day: date) -> Optional[str]:
        """
        Get the holiday name for a venue-local date.

        Args:
            day: Date to check

        Returns:
            Holiday name or None
        """
        if day in self.extra_holidays:
            return self.extra_holidays[day]
        return _holidays_for_year(day.year).get(day)

    def to_local(self, now: datetime, timezone: Optional[str] = None) -> datetime:
        """
        Convert an instant to venue-local time. Naive datetimes are taken to
        already be venue-local.
        """
        tz = pytz.timezone(timezone or self.timezone)
        if now.tzinfo is None:
            return tz.localize(now)
        return now.astimezone(tz)

    def is_open(self, now: Optional[datetime] = None, timezone: Optional[str] = None) -> Tuple[bool, str]:
        """
        Check whether the market is open.

        Args:
            now: Instant to evaluate (defaults to the current time)
            timezone: Venue timezone override

        Returns:
            Tuple of (open, reason). Reason is "open", "weekend",
            "holiday (<name>)", "before market open" or "after market close".
        """
        if now is None:
            now = datetime.now(pytz.utc)

        local = self.to_local(now, timezone)

        if local.weekday() >= 5:
            return False, self.WEEKEND

        holiday = self.holiday_name(local.date())
        if holiday:
            return False, f"holiday ({holiday})"

        wall_clock = local.time().replace(tzinfo=None)
        if wall_clock < self.open_time:
            return False, self.BEFORE_OPEN
        if wall_clock >= self.close_time:
            return False, self.AFTER_CLOSE

        return True, self.OPEN

    def check(self, now: Optional[datetime] = None) -> Optional[str]:
        """
        Diagnostic form of is_open.

        Returns:
            None when open, otherwise "Outside market hours: <reason>"
        """
        is_open, reason = self.is_open(now)
        if is_open:
            return None
        message = f"Outside market hours: {reason}"
        logger.debug(message)
        return message
