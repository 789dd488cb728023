"""Canonical trading-close and settlement instants from a market's raw time fields.

Platforms populate their time fields inconsistently. A market may carry a precise
``close_time``, only a "latest possible" expiration, a human sentence such as
"Otherwise, it closes by Dec 31, 2026 at 11:59 PM EST", or nothing usable at all.
Every helper here is pure and never raises: anything that does not parse is simply
treated as "no deadline".
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from dateutil import parser as date_parser
from dateutil import tz

PRIMARY_CLOSE_FIELD = "close_time"
LATEST_EXPIRATION_FIELD = "latest_expiration_time"
CLOSING_TEXT_FIELDS = ("early_close_condition", "rules_secondary")
EXPIRATION_FIELD = "expiration_time"
SETTLEMENT_TS_FIELD = "settlement_ts"
SETTLEMENT_TIMER_FIELD = "settlement_timer_seconds"

_EASTERN = tz.gettz("America/New_York")
_CENTRAL = tz.gettz("America/Chicago")
_MOUNTAIN = tz.gettz("America/Denver")
_PACIFIC = tz.gettz("America/Los_Angeles")

_TZINFOS: dict[str, Any] = {
    "ET": _EASTERN,
    "EST": tz.tzoffset("EST", -5 * 3600),
    "EDT": tz.tzoffset("EDT", -4 * 3600),
    "CT": _CENTRAL,
    "CST": tz.tzoffset("CST", -6 * 3600),
    "CDT": tz.tzoffset("CDT", -5 * 3600),
    "MT": _MOUNTAIN,
    "MST": tz.tzoffset("MST", -7 * 3600),
    "MDT": tz.tzoffset("MDT", -6 * 3600),
    "PT": _PACIFIC,
    "PST": tz.tzoffset("PST", -8 * 3600),
    "PDT": tz.tzoffset("PDT", -7 * 3600),
    "UTC": tz.UTC,
    "GMT": tz.UTC,
}

_CLOSES_BY_PATTERN = re.compile(
    r"otherwise,?\s+it\s+closes\s+by\s+"
    r"(?P<date>.+?)\s+at\s+"
    r"(?P<time>\d{1,2}(?::\d{2})?\s*(?:[ap]\.?m\.?)?)\s*"
    r"(?P<zone>[A-Za-z]{2,4})\b",
    re.IGNORECASE,
)

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values (as read back from SQLite) and convert aware ones."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: Any) -> datetime | None:
    """Parse an ISO-8601 string, epoch seconds or datetime into an aware UTC instant."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return as_utc(date_parser.isoparse(value.strip()))
    except (ValueError, TypeError, OverflowError):
        return None


def parse_closing_text(text: Any) -> datetime | None:
    """Extract the instant from an "otherwise, it closes by <date> at <time> <tz>" sentence."""

    if not isinstance(text, str):
        return None
    match = _CLOSES_BY_PATTERN.search(text)
    if not match:
        return None

    zone = match.group("zone").upper()
    if zone not in _TZINFOS:
        return None
    time_part = match.group("time").replace(".", "").strip()
    candidate = f"{match.group('date').strip()} {time_part} {zone}"
    try:
        parsed = date_parser.parse(candidate, tzinfos=_TZINFOS, fuzzy=False)
    except (ValueError, TypeError, OverflowError):
        return None
    return as_utc(parsed)


def derive_trading_close(raw: Mapping[str, Any] | None) -> datetime | None:
    """Return the market's trading deadline using the fixed fallback order.

    ``close_time`` wins, then ``latest_expiration_time``, then the closing sentence
    in the rules text, then ``expiration_time``.
    """

    if not raw:
        return None

    primary = parse_instant(raw.get(PRIMARY_CLOSE_FIELD))
    if primary is not None:
        return primary

    latest = parse_instant(raw.get(LATEST_EXPIRATION_FIELD))
    if latest is not None:
        return latest

    for field_name in CLOSING_TEXT_FIELDS:
        from_text = parse_closing_text(raw.get(field_name))
        if from_text is not None:
            return from_text

    return parse_instant(raw.get(EXPIRATION_FIELD))


def derive_settlement(
    raw: Mapping[str, Any] | None, trading_close: datetime | None
) -> datetime | None:
    """Return the payout instant: explicit ``settlement_ts`` or close plus the settlement timer."""

    if not raw:
        return None

    settled = parse_instant(raw.get(SETTLEMENT_TS_FIELD))
    if settled is not None:
        return settled

    if trading_close is None:
        return None
    delay = raw.get(SETTLEMENT_TIMER_FIELD)
    if isinstance(delay, bool) or delay is None:
        return None
    try:
        seconds = float(delay)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    try:
        return trading_close + timedelta(seconds=seconds)
    except OverflowError:
        return None


def deadline_sort_key(value: datetime | None) -> datetime:
    """Sort key placing undated ("no deadline") values after every dated one."""

    return as_utc(value) if value is not None else _FAR_FUTURE


__all__ = [
    "as_utc",
    "deadline_sort_key",
    "derive_settlement",
    "derive_trading_close",
    "parse_closing_text",
    "parse_instant",
]
