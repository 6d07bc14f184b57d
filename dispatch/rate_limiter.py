"""
Sending Window — answers "may we send right now?" and "how long between sends?"

Independent of any credential. Every method takes `now` explicitly, so the
gate is a pure function of wall-clock time and configuration.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Tuple

import pytz

import config
from config import ConfigurationError
from dispatch.clock import as_utc

logger = logging.getLogger("outreach.rate_limiter")


class SendingWindow:
    """
    Daily [start_hour, end_hour) window in a fixed timezone.

    With `send_on_weekends=False` Saturdays and Sundays are closed all day
    and `next_eligible_instant` rolls over to Monday.
    """

    def __init__(
        self,
        start_hour: int = None,
        end_hour: int = None,
        timezone: str = None,
        send_on_weekends: bool = None,
        min_delay: timedelta = None,
    ):
        self.start_hour = config.SENDING_HOUR_START if start_hour is None else start_hour
        self.end_hour = config.SENDING_HOUR_END if end_hour is None else end_hour
        self.send_on_weekends = config.SEND_ON_WEEKENDS if send_on_weekends is None else send_on_weekends
        self.min_delay = min_delay or timedelta(seconds=config.MIN_SEND_DELAY_SECONDS)
        tz_name = timezone or config.TARGET_TIMEZONE

        if not (0 <= self.start_hour < self.end_hour <= 24):
            raise ConfigurationError(
                f"malformed sending window {self.start_hour}:00-{self.end_hour}:00"
            )
        if self.min_delay <= timedelta(0):
            raise ConfigurationError("minimum send delay must be positive")
        try:
            self.tz = pytz.timezone(tz_name)
        except pytz.UnknownTimeZoneError:
            raise ConfigurationError(f"unknown sending timezone {tz_name!r}")

    def __repr__(self):
        return f"SendingWindow({self.start_hour:02d}:00-{self.end_hour:02d}:00 {self.tz.zone})"

    # ── queries ──────────────────────────────────────────────────────

    def is_within_window(self, now: datetime) -> bool:
        local = self._local(now)
        if not self._is_sending_day(local.date()):
            return False
        return self.start_hour <= local.hour < self.end_hour

    def status(self, now: datetime) -> Tuple[bool, str]:
        """Same answer as is_within_window, plus a reason for the logs."""
        local = self._local(now)
        if not self._is_sending_day(local.date()):
            return False, f"Weekend ({local.strftime('%A')}) — paused"
        if local.hour < self.start_hour:
            return False, f"Too early ({local.hour}:00) — starts {self.start_hour}:00"
        if local.hour >= self.end_hour:
            return False, f"Too late ({local.hour}:00) — ended {self.end_hour}:00"
        return True, f"OK ({local.hour}:00 {local.strftime('%Z')})"

    def next_eligible_instant(self, now: datetime) -> datetime:
        """
        `now` if the window is open; today's start if we are early;
        otherwise the start of the next sending day.
        """
        if self.is_within_window(now):
            return now

        local = self._local(now)
        day = local.date()
        if self._is_sending_day(day) and local.hour < self.start_hour:
            return self._at_hour(day, self.start_hour)

        day += timedelta(days=1)
        while not self._is_sending_day(day):
            day += timedelta(days=1)
        return self._at_hour(day, self.start_hour)

    def suggested_inter_send_delay(self, remaining_count: int, now: datetime) -> timedelta:
        """
        Spread `remaining_count` sends evenly over what is left of today's
        window. Never below `min_delay`, so a nearly-closed window or a huge
        backlog cannot turn into a burst.
        """
        if remaining_count <= 0 or not self.is_within_window(now):
            return self.min_delay

        local = self._local(now)
        window_end = self._at_hour(local.date(), self.end_hour)
        per_send = (window_end - local) / remaining_count
        delay = max(self.min_delay, per_send)
        logger.debug(
            "inter_send_delay",
            extra={"remaining": remaining_count, "delay_seconds": delay.total_seconds()},
        )
        return delay

    def time_until_close(self, now: datetime) -> timedelta:
        if not self.is_within_window(now):
            return timedelta(0)
        local = self._local(now)
        return self._at_hour(local.date(), self.end_hour) - local

    # ── internal helpers ─────────────────────────────────────────────

    def _local(self, now: datetime) -> datetime:
        return as_utc(now).astimezone(self.tz)

    def _is_sending_day(self, day: date) -> bool:
        return self.send_on_weekends or day.weekday() < 5

    def _at_hour(self, day: date, hour: int) -> datetime:
        # hour may be 24 (window closes at midnight)
        naive = datetime.combine(day, time(0)) + timedelta(hours=hour)
        return self.tz.localize(naive)
