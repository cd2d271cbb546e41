"""
Timestamp normalization for persisted temporal values.

Records written by different clients over time carry dates in several shapes:
native datetimes, BSON timestamps, {seconds, nanoseconds} maps exported from
older stores, ISO-8601 strings and numeric epochs (milliseconds). Every read
path funnels them through normalize_timestamp so callers only ever see an
aware UTC datetime, or None when the value cannot be represented.
"""
import logging
import math
from collections.abc import Mapping
from datetime import date, datetime, time, timezone
from typing import Any, Iterable, Optional

from bson.timestamp import Timestamp

logger = logging.getLogger(__name__)

_SECONDS_KEYS = ("seconds", "_seconds")
_NANOS_KEYS = ("nanoseconds", "_nanoseconds")


def _from_epoch_seconds(seconds: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _first_present(value: Mapping, keys: Iterable[str]) -> Any:
    for key in keys:
        if key in value:
            return value[key]
    return None


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """Return value as an aware UTC datetime, or None if unrepresentable.

    Accepted shapes:
    - datetime (naive values are UTC, which is how MongoDB hands them back)
    - date (midnight UTC)
    - bson.Timestamp
    - mapping with seconds/nanoseconds (or _seconds/_nanoseconds)
    - ISO-8601 string, trailing 'Z' allowed
    - int/float epoch in milliseconds

    Never raises.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)

    if isinstance(value, Timestamp):
        return value.as_datetime().astimezone(timezone.utc)

    if isinstance(value, Mapping):
        seconds = _first_present(value, _SECONDS_KEYS)
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            nanos = _first_present(value, _NANOS_KEYS) or 0
            if isinstance(nanos, bool) or not isinstance(nanos, (int, float)):
                nanos = 0
            result = _from_epoch_seconds(seconds + nanos / 1e9)
            if result is not None:
                return result
        logger.warning(f"Unrepresentable timestamp mapping: {dict(value)!r}")
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Unparseable timestamp string: {value!r}")
            return None
        return normalize_timestamp(parsed)

    # bool is an int subclass; True is not a point in time
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if isinstance(value, float) and not math.isfinite(value):
            logger.warning(f"Non-finite epoch value: {value!r}")
            return None
        result = _from_epoch_seconds(value / 1000)
        if result is None:
            logger.warning(f"Epoch value out of range: {value!r}")
        return result

    logger.warning(f"Unsupported timestamp type {type(value).__name__}")
    return None


def normalize_timestamp_fields(doc: Optional[dict], fields: Iterable[str]) -> Optional[dict]:
    """Normalize the named fields of a record in place; missing fields are skipped."""
    if not doc:
        return doc
    for field in fields:
        if field in doc:
            doc[field] = normalize_timestamp(doc[field])
    return doc


def format_date(value: Any, fmt: str = "%Y-%m-%d") -> str:
    """Render a temporal value for exports, empty string when unrepresentable."""
    normalized = normalize_timestamp(value)
    if normalized is None:
        return ""
    return normalized.strftime(fmt)


def add_years(value: datetime, years: int) -> datetime:
    """Same calendar day `years` later; 29 February falls back to the 28th."""
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        return value.replace(year=value.year + years, day=28)
