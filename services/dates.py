"""Normalisation of client supplied dates into the canonical storage format.

Every stored date is a ``YYYY-MM-DD HH:MM:SS`` string in UTC. Fields with
calendar semantics (due dates, target dates) are truncated to midnight, while
timestamps keep their time of day.

Values that carry an explicit offset are converted to UTC. Values without one
are treated as wall-clock calendar values and are never shifted through the
host timezone, so the same input always yields the same output.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Optional

import pytz
from dateutil.parser import isoparse
from dateutil.parser import parse as dateutil_parse

logger = logging.getLogger(__name__)

STORAGE_FORMAT = "%Y-%m-%d %H:%M:%S"

# dd/mm/yyyy, dd.mm.yyyy and dd-mm-yyyy with an optional HH:MM[:SS] suffix
DAY_FIRST_PATTERN = re.compile(
    r"^(?P<day>\d{1,2})[./-](?P<month>\d{1,2})[./-](?P<year>\d{4})"
    r"(?:[ T,]+(?P<hour>\d{1,2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?)?$"
)

ISO_PREFIX_PATTERN = re.compile(r"^\d{4}-\d{2}(-\d{2})?")

# Fixed default so partial inputs never pick up today's date.
_PARSE_DEFAULT = datetime(1900, 1, 1)


def _to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(pytz.utc).replace(tzinfo=None)


def _from_epoch_millis(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=pytz.utc).replace(tzinfo=None)


def _parse_day_first(text: str) -> Optional[datetime]:
    match = DAY_FIRST_PATTERN.match(text)
    if not match:
        return None
    return datetime(
        int(match.group("year")),
        int(match.group("month")),
        int(match.group("day")),
        int(match.group("hour") or 0),
        int(match.group("minute") or 0),
        int(match.group("second") or 0),
    )


def parse_client_date(raw: Any) -> Optional[datetime]:
    """Parse ``raw`` into a naive UTC ``datetime``.

    Raises ``ValueError`` (or ``OverflowError``) when the value cannot be read as
    a date. Empty values return ``None``.
    """
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError(f"Boolean is not a date: {raw!r}")
    if isinstance(raw, datetime):
        return _to_utc_naive(raw)
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day)
    if isinstance(raw, (int, float)):
        return _from_epoch_millis(raw)

    text = str(raw).strip()
    if not text:
        return None

    day_first = _parse_day_first(text)
    if day_first is not None:
        return day_first

    if ISO_PREFIX_PATTERN.match(text):
        try:
            return _to_utc_naive(isoparse(text))
        except ValueError:
            pass

    parsed = dateutil_parse(text, dayfirst=True, default=_PARSE_DEFAULT)
    return _to_utc_naive(parsed)


def normalize_date(raw: Any, keep_time: bool) -> Optional[str]:
    """Return the canonical storage string for ``raw`` or ``None``.

    Unparseable input is logged and resolves to ``None`` so a single bad field
    never aborts a save.
    """
    try:
        parsed = parse_client_date(raw)
    except (ValueError, OverflowError, OSError, TypeError) as exc:
        logger.warning("Invalid date format encountered: %r (%s)", raw, exc)
        return None
    if parsed is None:
        return None
    if keep_time:
        parsed = parsed.replace(microsecond=0)
    else:
        parsed = parsed.replace(hour=0, minute=0, second=0, microsecond=0)
    return parsed.strftime(STORAGE_FORMAT)


__all__ = ["STORAGE_FORMAT", "normalize_date", "parse_client_date"]
