"""Utility helpers shared by the client, scorer and CLI."""

import logging
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

logger = logging.getLogger(__name__)

_YEAR_RE = re.compile(r'^(\d{4})')


def parse_year(date_str: str | None) -> int | None:
    """
    Extract the year from a provider date string ("2008-01-20").

    Returns None for empty or malformed values instead of raising.
    """
    if not date_str:
        return None
    match = _YEAR_RE.match(date_str.strip())
    if not match:
        return None
    year = int(match.group(1))
    return year if year > 0 else None


def parse_retry_after(value: str | None, default: float, now: datetime | None = None) -> float:
    """
    Parse a Retry-After header into seconds.

    The header may be a number of seconds or an HTTP date. Missing, malformed
    or negative values fall back to ``default``.
    """
    if value is None or not value.strip():
        return default

    raw = value.strip()
    try:
        seconds = float(raw)
        return seconds if seconds >= 0 else default
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Retry-After header '{raw}', using {default}s")
        return default

    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))
