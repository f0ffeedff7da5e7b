from __future__ import annotations

import logging
from typing import Optional

from foreman.cron import parse_crontab
from foreman.errors import CronFieldError, InvalidScheduleError
from foreman.schedule import Schedule
from foreman.timestamps import parse_timestamps

logger = logging.getLogger(__name__)

SCHEDULE_HINT = (
    'A schedule is a crontab ("0 0 1 1 3", "*/3 12-22/5 * * *", "@daily") or a (list of) '
    'timestamp(s), e.g. {"2042-12-05 13:37 +00","2014-01-01 12:31 +00"}.'
)


def parse_schedule(text: str) -> Schedule:
    """Parse a crontab, falling back to timestamps.

    Raises InvalidScheduleError when neither parser accepts ``text``.
    """
    field_error: Optional[CronFieldError] = None
    try:
        crontab = parse_crontab(text)
    except CronFieldError as exc:
        logger.debug("Crontab field rejected in %r: %s", text, exc.message)
        field_error = exc
        crontab = None
    if crontab is not None:
        return crontab

    stamps = parse_timestamps(text)
    if stamps is not None:
        return stamps

    detail = None
    if field_error is not None:
        detail = field_error.detail or field_error.message
    error = InvalidScheduleError(f'Error: "{text}" is not a valid schedule.', detail=detail, hint=SCHEDULE_HINT)
    if field_error is not None:
        raise error from field_error
    raise error


def is_valid_schedule(text: str) -> bool:
    try:
        parse_schedule(text)
    except InvalidScheduleError:
        return False
    return True

