"""foreman: cron-style job scheduling with a job registry and run logs."""

from foreman.cron import parse_cronfield, parse_crontab
from foreman.dispatcher import Dispatcher
from foreman.errors import (
    AuthorizationError,
    ConfigError,
    CronFieldError,
    ForemanError,
    GrammarError,
    InvalidScheduleError,
    JobDefinitionError,
    JobNotFoundError,
    RangeError,
    UniquenessConflictError,
)
from foreman.jobs import Job, JobLog, RunLog, RunOutcome
from foreman.lifecycle import JobLifecycleValidator
from foreman.parser import is_valid_schedule, parse_schedule
from foreman.principals import PrincipalDirectory, StaticPrincipalDirectory
from foreman.registry import JobRegistry
from foreman.schedule import CrontabSchedule, TimestampSchedule, matches, next_fire_after
from foreman.sql_store import SqlJobStore
from foreman.store import InMemoryJobStore, JobStore
from foreman.timestamps import parse_timestamps

__version__ = "0.1.0"
