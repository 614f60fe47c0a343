"""
Helper Utilities Module
Common utility functions used across the sync engine.
"""

from datetime import datetime
from typing import Any, List, Optional, Union

from dateutil import parser as date_parser
import pytz


MAX_ERROR_LENGTH = 4000


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.

    All persisted timestamps are naive UTC, matching the ORM column types.
    """
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO 8601 string (or pass through a datetime) to naive UTC.

    Args:
        value: Datetime string or datetime

    Returns:
        datetime object or None if parsing fails
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        return to_naive_utc(value)

    try:
        return to_naive_utc(date_parser.parse(value))
    except (ValueError, TypeError, OverflowError):
        return None


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime for JSON output."""
    return value.isoformat() if value else None


def chunk_list(lst: List[Any], chunk_size: int) -> List[List[Any]]:
    """
    Split a list into chunks of specified size.

    Args:
        lst: List to chunk
        chunk_size: Size of each chunk

    Returns:
        List of chunks
    """
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def sanitize_string(text: Optional[str], max_length: int = None) -> Optional[str]:
    """
    Sanitize string for database storage.

    Args:
        text: Text to sanitize
        max_length: Maximum length (truncate if exceeded)

    Returns:
        Sanitized string
    """
    if text is None:
        return None

    text = text.replace('\x00', '')

    if max_length and len(text) > max_length:
        text = text[:max_length - 3] + '...'

    return text


def error_text(error: BaseException) -> str:
    """Human-readable error text suitable for the run and ledger tables."""
    message = str(error) or error.__class__.__name__
    return sanitize_string(message, MAX_ERROR_LENGTH)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "2h 30m", "45s")
    """
    if not seconds:
        return "0s"

    seconds = int(seconds)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60

    if hours == 0 and minutes == 0:
        return f"{seconds}s"

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    return " ".join(parts)
