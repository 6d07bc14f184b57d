"""
Wall-clock helpers.

Every component takes `now` (or a clock callable) as a parameter so tests can
pin time. Datetimes handed around are timezone-aware UTC; MongoDB documents
store naive UTC, the same as pymongo returns them.
"""

from datetime import datetime
from typing import Callable

import pytz

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones."""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def to_storage(value: datetime) -> datetime:
    """Naive UTC, the form kept in the database."""
    return as_utc(value).replace(tzinfo=None)
