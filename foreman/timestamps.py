"""Timestamp schedules.

A schedule that is not a crontab may be a single timestamp or a list of
them, written bare, comma separated or brace delimited with optional double
quotes, e.g. ``{"2042-12-05 13:37 +00","2014-01-01 12:31 +00"}``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import List, Optional

from foreman.cron import is_crontab
from foreman.schedule import UTC, TimestampSchedule, format_minute

logger = logging.getLogger(__name__)

TIMESTAMP_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[ T](?P<time>\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?)"
    r"\s*(?P<offset>Z|UTC|[+-]\d{2}(:?\d{2})?)?$",
    re.IGNORECASE,
)


def parse_timestamp(literal: str) -> Optional[datetime]:
    """Parse one timestamp literal into an aware UTC datetime, or None."""
    match = TIMESTAMP_RE.match(literal.strip())
    if not match:
        return None
    offset = (match.group("offset") or "").upper()
    if offset in ("", "Z", "UTC"):
        offset = "+00:00"
    elif len(offset) == 3:
        offset = f"{offset}:00"
    elif ":" not in offset:
        offset = f"{offset[:3]}:{offset[3:]}"
    try:
        parsed = datetime.fromisoformat(f"{match.group('date')}T{match.group('time')}{offset}")
    except ValueError:
        return None
    return parsed.astimezone(UTC)


def split_timestamp_list(schedule: str) -> Optional[List[str]]:
    """Split a (brace delimited) list of literals; None when malformed."""
    text = schedule.strip()
    if text.startswith("{") or text.endswith("}"):
        if not (text.startswith("{") and text.endswith("}")):
            return None
        text = text[1:-1]

    elements: List[str] = []
    current: List[str] = []
    quoted = False
    was_quoted = False
    escaped = False
    for char in text:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\" and quoted:
            escaped = True
        elif char == '"':
            quoted = not quoted
            was_quoted = True
        elif char == "," and not quoted:
            elements.append(_element(current, was_quoted))
            current = []
            was_quoted = False
        else:
            current.append(char)
    if quoted or escaped:
        return None
    elements.append(_element(current, was_quoted))
    return elements


def _element(chars: List[str], was_quoted: bool) -> str:
    value = "".join(chars)
    return value if was_quoted else value.strip()


def parse_timestamps(schedule: str) -> Optional[TimestampSchedule]:
    """Parse ``schedule`` as timestamps.

    A valid crontab is never reinterpreted, and any parse failure means "not
    timestamps" rather than an error: both return None.
    """
    if is_crontab(schedule):
        return None

    literals = split_timestamp_list(schedule)
    if not literals:
        return None

    stamps = set()
    for literal in literals:
        moment = parse_timestamp(literal)
        if moment is None:
            logger.debug("Not a timestamp schedule: %r (element %r)", schedule, literal)
            return None
        stamps.add(format_minute(moment))
    return TimestampSchedule(timestamps=tuple(sorted(stamps)))
