"""
Window arithmetic for duplicate, limit and exclusivity rules.

Durations use ISO-8601 interval syntax. A leading ``P`` means a rolling window
(reference time minus the interval). Without it, a duration ending in Y/M/W/D is
calendar aligned: the reference time first snaps forward to the start of the
next year/month/week/day and the interval is subtracted from there, so ``1M``
means "this calendar month" rather than "the last 30 days".

Rows older than RETENTION_CEILING are purged by the retention pass, so no rule
window longer than one month and one day can see its full history.
"""
from __future__ import annotations

import datetime as dt
import logging
import re

import pendulum
from pendulum.parsing.exceptions import ParserError


DEFAULT_INTERVAL = "P1M"
RETENTION_CEILING = {"months": 1, "days": 1}

_HAS_DIGIT = re.compile(r"\d")

_logger = logging.getLogger("intervals")


def parse_interval(duration: str) -> pendulum.Duration:
    """Parse an ISO-8601 duration, falling back to one calendar month."""
    text = str(duration or "").strip()
    parsed = None
    if _HAS_DIGIT.search(text):
        try:
            parsed = pendulum.parse(text)
        except (ParserError, ValueError, TypeError, OverflowError):
            parsed = None
    if not isinstance(parsed, pendulum.Duration):
        _logger.debug("unparsable duration=%r, using default=%s", duration, DEFAULT_INTERVAL)
        return pendulum.duration(months=1)
    return parsed


def _snap_to_next_boundary(moment: pendulum.DateTime, unit: str) -> pendulum.DateTime:
    if unit == "Y":
        return moment.add(years=1).start_of("year")
    if unit == "M":
        return moment.add(months=1).start_of("month")
    if unit == "W":
        return moment.next(pendulum.SUNDAY)
    if unit == "D":
        return moment.add(days=1).start_of("day")
    return moment


def reference_time(timezone: str | None = None, send_time: dt.datetime | None = None) -> pendulum.DateTime:
    tz = timezone or "UTC"
    if send_time is None:
        return pendulum.now(tz)
    # Naive send times are taken as UTC.
    return pendulum.instance(send_time).in_timezone(tz)


def oldest_date_added(
    duration: str,
    timezone: str | None = None,
    send_time: dt.datetime | None = None,
) -> pendulum.DateTime:
    oldest = reference_time(timezone, send_time)
    text = str(duration or "").strip()
    if not text.startswith("P"):
        # Only simple (single unit) intervals snap cleanly.
        oldest = _snap_to_next_boundary(oldest, text[-1:].upper())
        text = "P" + text
    try:
        oldest = oldest - parse_interval(text)
    except (ValueError, OverflowError):
        _logger.debug("duration=%r out of range, using default=%s", duration, DEFAULT_INTERVAL)
        oldest = oldest - parse_interval(DEFAULT_INTERVAL)
    return oldest.replace(microsecond=0)


def rolling_end(duration: str, start: dt.datetime) -> pendulum.DateTime:
    """start plus duration, always rolling; used for exclusivity expiry."""
    text = str(duration or "").strip()
    if not text.startswith("P"):
        text = "P" + text
    base = pendulum.instance(start)
    try:
        end = base + parse_interval(text)
    except (ValueError, OverflowError):
        _logger.debug("duration=%r out of range, using default=%s", duration, DEFAULT_INTERVAL)
        end = base + parse_interval(DEFAULT_INTERVAL)
    return end.replace(microsecond=0)


def retention_floor(now: dt.datetime | None = None) -> pendulum.DateTime:
    base = pendulum.now("UTC") if now is None else pendulum.instance(now)
    return base.subtract(**RETENTION_CEILING).replace(microsecond=0)


def to_storage(value: dt.datetime) -> dt.datetime:
    """Naive UTC at second precision, the form every stored timestamp uses."""
    utc = pendulum.instance(value).in_timezone("UTC")
    return dt.datetime(utc.year, utc.month, utc.day, utc.hour, utc.minute, utc.second)
