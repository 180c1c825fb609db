"""
Market session helper using pandas_market_calendars
Provides trading day lookups, exchange time zones and download date-range checks
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Union
from zoneinfo import ZoneInfo
import logging

import pandas as pd
import pandas_market_calendars as mcal

from ib_toolbox.data_download.lean_schema import Resolution

calendar_logger = logging.getLogger('ib_toolbox.trading_calendar')

# IB exchange codes mapped to pandas_market_calendars names
EXCHANGE_CALENDARS: Dict[str, str] = {
    'SMART': 'NYSE',
    'NYSE': 'NYSE',
    'NASDAQ': 'NASDAQ',
    'LSE': 'LSE',
    'TSE': 'JPX',
    'HKEX': 'HKEX',
}

EXCHANGE_TIMEZONES: Dict[str, str] = {
    'SMART': 'America/New_York',
    'NYSE': 'America/New_York',
    'NASDAQ': 'America/New_York',
    'LSE': 'Europe/London',
    'TSE': 'Asia/Tokyo',
    'HKEX': 'Asia/Hong_Kong',
}

# Recommended maximum span per resolution before pacing becomes a problem
MAX_RECOMMENDED_DAYS: Dict[Resolution, int] = {
    Resolution.TICK: 1,
    Resolution.SECOND: 7,
    Resolution.MINUTE: 30,
    Resolution.HOUR: 365,
    Resolution.DAILY: 3650,
}


@dataclass
class DateRangeValidation:
    """Result of a download date-range check."""

    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class MarketSessionHelper:
    """
    Trading-session helper backed by pandas_market_calendars.
    Exchanges without a known calendar fall back to weekday filtering.
    """

    def __init__(self):
        self._calendars = {}

    def _calendar_for(self, exchange: str):
        name = EXCHANGE_CALENDARS.get((exchange or '').upper())
        if name is None:
            return None
        if name not in self._calendars:
            self._calendars[name] = mcal.get_calendar(name)
            calendar_logger.info(f"📅 TRADING CALENDAR: Loaded {name} calendar for {exchange}")
        return self._calendars[name]

    def get_trading_days(self, start_date: date, end_date: date, exchange: str = 'SMART') -> List[date]:
        """
        Get all trading days between start_date and end_date (inclusive)

        Args:
            start_date: Start date
            end_date: End date
            exchange: IB exchange code

        Returns:
            List of date objects representing trading days
        """
        if start_date > end_date:
            return []

        calendar = self._calendar_for(exchange)
        if calendar is None:
            days = []
            current = start_date
            while current <= end_date:
                if current.weekday() < 5:
                    days.append(current)
                current += timedelta(days=1)
        else:
            valid_days = calendar.valid_days(start_date=pd.Timestamp(start_date), end_date=pd.Timestamp(end_date))
            days = [day.date() for day in valid_days]

        calendar_logger.debug(
            f"Found {len(days)} trading days between {start_date:%Y-%m-%d} and {end_date:%Y-%m-%d} for {exchange}"
        )
        return days

    def is_trading_day(self, check_date: date, exchange: str = 'SMART') -> bool:
        """
        Check if a specific date is a trading day on the exchange

        Args:
            check_date: Date to check
            exchange: IB exchange code

        Returns:
            True if it's a trading day, False otherwise
        """
        if check_date.weekday() >= 5:
            return False
        return check_date in self.get_trading_days(check_date, check_date, exchange)

    def get_exchange_timezone(self, exchange: str) -> ZoneInfo:
        return ZoneInfo(EXCHANGE_TIMEZONES.get((exchange or '').upper(), 'UTC'))

    def validate_date_range(
        self,
        start_date: Union[date, datetime],
        end_date: Union[date, datetime],
        resolution: Union[str, Resolution],
        today: Optional[date] = None,
    ) -> DateRangeValidation:
        """
        Check that a download range is reasonable before any request is made

        Errors: start not before end, start in the future.
        Warnings: end in the future (clamped to today for the span check),
        span longer than the resolution's recommended maximum.
        """
        result = DateRangeValidation()
        today = today or date.today()
        start_day = start_date.date() if isinstance(start_date, datetime) else start_date
        end_day = end_date.date() if isinstance(end_date, datetime) else end_date

        if start_date >= end_date:
            result.is_valid = False
            result.errors.append("Start date must be before end date")
            return result

        if start_day > today:
            result.is_valid = False
            result.errors.append("Start date cannot be in the future")
            return result

        if end_day > today:
            result.warnings.append(
                f"End date {end_day:%Y-%m-%d} is in the future, will only download data up to {today:%Y-%m-%d}"
            )
            end_day = today

        try:
            parsed = Resolution.parse(resolution)
            max_days, label = MAX_RECOMMENDED_DAYS[parsed], parsed.value
        except ValueError:
            max_days, label = 30, str(resolution)

        day_span = (end_day - start_day).days
        if day_span > max_days:
            result.warnings.append(
                f"Date range of {day_span} days is quite large for {label} resolution. "
                "Consider breaking into smaller chunks if you encounter rate limiting issues."
            )

        return result
