"""Crontab parsing.

Main source for decisions is ``man 5 crontab``: fields are
``minute hour day-of-month month day-of-week``, each a comma separated list
of ``*``, ``N`` or ``N-M`` entries with an optional ``/step``.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

from foreman.errors import CronFieldError, GrammarError, RangeError
from foreman.schedule import CrontabSchedule

CRON_ENTRY_RE = re.compile(r"^(\*|(\d{1,2})(-(\d{1,2}))?)(/(\d{1,2}))?$")
WHITESPACE_RE = re.compile(r"\s+")

MINUTE_BOUNDS = (0, 59)
HOUR_BOUNDS = (0, 23)
DOM_BOUNDS = (1, 31)
MONTH_BOUNDS = (1, 12)
DOW_BOUNDS = (0, 7)

CRON_ALIASES: Dict[str, str] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}


def parse_cronfield(field: str, minimum: int, maximum: int) -> Tuple[int, ...]:
    """Expand one crontab field into its sorted, distinct values.

    Raises GrammarError for entries outside the grammar and RangeError for
    inverted or out-of-bounds ranges.
    """
    values = set()
    for entry in field.split(","):
        match = CRON_ENTRY_RE.match(entry)
        if not match:
            raise GrammarError(
                f'Error: Invalid cron entry "{entry}" in field "{field}".',
                field=field,
                hint='Entries look like "*", "N", "N-M", optionally followed by "/step".',
            )
        step = int(match.group(6)) if match.group(6) is not None else 1
        if step == 0:
            raise GrammarError(f'Error: Invalid step "{entry}" in field "{field}".', field=field)

        if match.group(1) == "*":
            start, end = minimum, maximum
        else:
            start = int(match.group(2))
            if match.group(4) is not None:
                end = int(match.group(4))
            elif match.group(6) is not None:
                # "N/S" runs from N to the field's own maximum
                end = maximum
            else:
                end = start

        if end < start or end > maximum or start < minimum:
            raise RangeError(
                "Error: Invalid crontab parameter.",
                field=field,
                detail=(
                    f"Range start: {start} ({minimum}), End range: {end} ({maximum}), "
                    f"Step: {step} for crontab field: {field}"
                ),
                hint="Ensure range is ascending and that the range is within allowed bounds",
            )
        values.update(range(start, end + 1, step))

    if not values:
        raise GrammarError(f'Error: Crontab field "{field}" denotes no values.', field=field)
    return tuple(sorted(values))


def split_crontab(schedule: str) -> Optional[List[str]]:
    """Return the five field tokens, or None when this is not crontab shaped."""
    tokens = WHITESPACE_RE.split(schedule.strip())
    if len(tokens) == 1:
        alias = CRON_ALIASES.get(tokens[0])
        if alias is None:
            return None
        tokens = alias.split(" ")
    if len(tokens) != 5:
        return None
    return tokens


def parse_crontab(schedule: str) -> Optional[CrontabSchedule]:
    """Parse a crontab schedule.

    Returns None when ``schedule`` does not have the shape of a crontab (the
    caller is expected to try timestamps next). A crontab shaped string with
    a bad field raises that field's GrammarError or RangeError.
    """
    tokens = split_crontab(schedule)
    if tokens is None:
        return None
    minute_tok, hour_tok, dom_tok, month_tok, dow_tok = tokens

    minute = parse_cronfield(minute_tok, *MINUTE_BOUNDS)
    hour = parse_cronfield(hour_tok, *HOUR_BOUNDS)
    dom = parse_cronfield(dom_tok, *DOM_BOUNDS)
    month = parse_cronfield(month_tok, *MONTH_BOUNDS)
    dow = parse_cronfield(dow_tok, *DOW_BOUNDS)

    # Day 7 is Sunday as well
    dow = tuple(sorted({value % 7 for value in dow}))

    # If both day fields are restricted (ie, are not *), the command runs when
    # either matches; a wildcard next to a restricted field does not count.
    if dow_tok == "*" and dom_tok != "*":
        dow = ()
    if dom_tok == "*" and dow_tok != "*":
        dom = ()

    return CrontabSchedule(minute=minute, hour=hour, dom=dom, month=month, dow=dow)


def is_crontab(schedule: str) -> bool:
    try:
        return parse_crontab(schedule) is not None
    except CronFieldError:
        return False
