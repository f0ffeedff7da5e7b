"""Sanity checks every job definition passes before it is stored.

Besides authorization and schedule validity, a timestamp schedule is
converted to UTC at minute granularity. A single timestamp equal to the
current minute is bumped one minute, so it will be picked up by the next
matching pass rather than racing the one already in flight.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from foreman.errors import AuthorizationError, JobDefinitionError
from foreman.jobs import Job
from foreman.parser import parse_schedule
from foreman.principals import PrincipalDirectory
from foreman.schedule import CrontabSchedule, TimestampSchedule, format_minute, parse_minute, utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class JobLifecycleValidator:
    def __init__(self, directory: PrincipalDirectory, clock: Optional[Clock] = None):
        self.directory = directory
        self.clock = clock or utc_now

    def validate(self, job: Job, caller: str) -> Job:
        """Return the normalized job, or raise when it may not be stored."""
        principal = job.principal or caller
        if not self.directory.exists(principal):
            raise AuthorizationError(
                "Insufficient privileges",
                detail=f'Principal "{principal}" does not exist',
            )
        if not self.directory.is_member(caller, principal):
            raise AuthorizationError(
                "Insufficient privileges",
                detail=f'You are not a member of role "{principal}"',
            )

        if not job.command or not job.command.strip():
            raise JobDefinitionError("Error: job command must be a non-empty string.")
        if not job.database or not job.database.strip():
            raise JobDefinitionError("Error: job database must be a non-empty string.")
        if job.failure_count < 0 or job.success_count < 0:
            raise JobDefinitionError("Error: job counters must be >= 0.")
        if job.timeout <= timedelta(0):
            raise JobDefinitionError("Error: job timeout must be a positive interval.")

        return replace(job, principal=principal, schedule=self.normalize_schedule(job.schedule))

    def normalize_schedule(self, text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        schedule = parse_schedule(text)
        if isinstance(schedule, CrontabSchedule):
            return text.strip()
        return self._bump_if_now(schedule).to_text()

    def _bump_if_now(self, schedule: TimestampSchedule) -> TimestampSchedule:
        now = format_minute(self.clock())
        if schedule.timestamps != (now,):
            return schedule
        bumped = format_minute(parse_minute(now) + timedelta(minutes=1))
        logger.info("Timestamp schedule %s is now; bumped to %s", now, bumped)
        return TimestampSchedule(timestamps=(bumped,))
