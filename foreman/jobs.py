"""Job definitions and the records written about them."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Tuple

from foreman.parser import parse_schedule
from foreman.schedule import Schedule

DEFAULT_JOB_TIMEOUT = timedelta(hours=6)


@dataclass
class Job:
    """A job definition.

    Attributes:
        job_id: Surrogate key; None until the store assigns one.
        database: The database this job should run at.
        principal: The principal (user/role) that should run this job.
        schedule: Stored schedule text; None means the job never auto-fires.
        enabled: Whether or not this job is picked up by the scheduler.
        failure_count: Failures since the last time it ran successfully.
        success_count: Number of successful runs.
        parallel: If true, multiple instances may be active at the same time.
        command: The commands to execute, opaque to the scheduler.
        description: Free text for human reading or filtering.
        timeout: Maximum run time, enforced by the executor.
        last_executed: The last time this job was started.
    """

    command: str
    database: str
    principal: Optional[str] = None
    schedule: Optional[str] = None
    enabled: bool = True
    parallel: bool = False
    description: Optional[str] = None
    timeout: timedelta = DEFAULT_JOB_TIMEOUT
    failure_count: int = 0
    success_count: int = 0
    last_executed: Optional[datetime] = None
    job_id: Optional[int] = None

    @property
    def definition_key(self) -> Tuple[str, Optional[str], str, str]:
        return (self.database, self.principal, self.schedule or "", self.command)

    def parsed_schedule(self) -> Optional[Schedule]:
        if self.schedule is None:
            return None
        return parse_schedule(self.schedule)


@dataclass(frozen=True)
class JobLog:
    """One completed execution attempt. ``error_code is None`` means success."""

    job_id: Optional[int]
    principal: str
    database: str
    started_at: datetime
    finished_at: datetime
    command: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    error_hint: Optional[str] = None
    log_id: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.error_code is None


@dataclass(frozen=True)
class RunLog:
    """One invocation of a job management function."""

    user_name: str
    function_signature: str
    function_arguments: Tuple[str, ...] = ()
    job_id: Optional[int] = None
    run_started: Optional[datetime] = None
    run_finished: Optional[datetime] = None
    rows_returned: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    error_hint: Optional[str] = None
    log_id: Optional[int] = None


@dataclass(frozen=True)
class Claim:
    job_id: int
    worker: str
    token: str
    exclusive: bool
    claimed_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RunOutcome:
    success: bool
    error_code: Optional[str] = None
    message: Optional[str] = None
    detail: Optional[str] = None
    hint: Optional[str] = None

    @staticmethod
    def ok() -> "RunOutcome":
        return RunOutcome(success=True)

    @staticmethod
    def failed(message: str, error_code: str = "P0001", detail: Optional[str] = None, hint: Optional[str] = None) -> "RunOutcome":
        return RunOutcome(success=False, error_code=error_code, message=message, detail=detail, hint=hint)


@dataclass
class JobChanges:
    """Update payload; a None attribute leaves the stored value unchanged."""

    command: Optional[str] = None
    database: Optional[str] = None
    schedule: Optional[str] = None
    principal: Optional[str] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None
    timeout: Optional[timedelta] = None
    parallel: Optional[bool] = None

    def apply(self, job: Job) -> Job:
        given = {name: value for name, value in asdict(self).items() if value is not None}
        return replace(job, **given)
