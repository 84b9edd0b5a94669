"""
Time Utilities

Exchanges report trade times in different formats:
- GDAX / Coinbase: ISO-8601 strings (e.g., "2020-01-01T00:00:00.123456Z")
- Others: seconds or milliseconds since epoch

The utilities in this module normalize all of them into timezone-aware
UTC datetime objects for use in our Pydantic schemas.
"""

from datetime import datetime, timezone
from typing import Union

from dateutil import parser as dateparser


def to_utc_datetime(timestamp: Union[int, float]) -> datetime:
    """
    Convert a timestamp (seconds or milliseconds) to UTC datetime.

    Detection Logic:
        - If timestamp > 1e12: assumed to be milliseconds
        - Otherwise: assumed to be seconds

    Raises:
        ValueError: If timestamp is negative or invalid

    Examples:
        >>> to_utc_datetime(1704110400000)
        datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)
    """
    if timestamp < 0:
        raise ValueError(f"Timestamp cannot be negative: {timestamp}")

    if timestamp > 1e12:
        timestamp = timestamp / 1000.0

    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OSError, OverflowError, ValueError) as e:
        raise ValueError(f"Invalid timestamp: {timestamp}. Error: {e}")


def parse_exchange_time(value: Union[str, int, float]) -> datetime:
    """
    Parse an exchange-reported time into a UTC datetime.

    Accepts ISO-8601 strings (naive values are taken as UTC) and numeric
    epoch timestamps.

    Raises:
        ValueError: If the value cannot be parsed

    Examples:
        >>> parse_exchange_time("2020-01-01T00:00:00Z")
        datetime.datetime(2020, 1, 1, 0, 0, tzinfo=datetime.timezone.utc)

        >>> parse_exchange_time("2020-01-01T02:00:00+02:00")
        datetime.datetime(2020, 1, 1, 0, 0, tzinfo=datetime.timezone.utc)
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid time: {value!r}")

    if isinstance(value, (int, float)):
        return to_utc_datetime(value)

    try:
        dt = dateparser.isoparse(str(value).strip())
    except (TypeError, ValueError, OverflowError) as e:
        raise ValueError(f"Invalid time: {value!r}. Error: {e}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

