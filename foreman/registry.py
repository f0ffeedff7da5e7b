"""Job management functions.

The registry is the one place jobs are created, changed or removed. Every
write passes JobLifecycleValidator, callers only see jobs of principals they
are a member of, and every call leaves a RunLog row, whether it succeeded or
not.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Sequence

from foreman.errors import JobNotFoundError, error_fields
from foreman.jobs import DEFAULT_JOB_TIMEOUT, Job, JobChanges, JobLog, RunLog
from foreman.lifecycle import Clock, JobLifecycleValidator
from foreman.principals import PrincipalDirectory
from foreman.schedule import next_fire_times, utc_now
from foreman.store import JobStore

logger = logging.getLogger(__name__)

JOB_FIELDS = "command, database, schedule, principal, description, enabled, timeout, parallel"


@dataclass
class _Call:
    job_id: Optional[int] = None
    rows: Optional[int] = None


class JobRegistry:
    def __init__(
        self,
        store: JobStore,
        directory: PrincipalDirectory,
        clock: Optional[Clock] = None,
        default_timeout: timedelta = DEFAULT_JOB_TIMEOUT,
    ):
        self.store = store
        self.directory = directory
        self.clock = clock or utc_now
        self.validator = JobLifecycleValidator(directory, clock=self.clock)
        self.default_timeout = default_timeout

    def insert_job(
        self,
        caller: str,
        command: str,
        database: str,
        schedule: Optional[str] = None,
        principal: Optional[str] = None,
        description: Optional[str] = None,
        enabled: bool = True,
        timeout: Optional[timedelta] = None,
        parallel: bool = False,
    ) -> Job:
        """Create a job; the principal defaults to the caller."""
        arguments = (command, database, schedule, principal, description, enabled, timeout, parallel)
        with self._audit(caller, f"insert_job({JOB_FIELDS})", arguments) as call:
            draft = Job(
                command=command,
                database=database,
                schedule=schedule,
                principal=principal,
                description=description,
                enabled=enabled,
                timeout=self.default_timeout if timeout is None else timeout,
                parallel=parallel,
            )
            job = self.store.insert_job(self.validator.validate(draft, caller))
            call.job_id, call.rows = job.job_id, 1
            logger.info("Inserted job %s for %s at %s (schedule=%s)", job.job_id, job.principal, job.database, job.schedule)
            return job

    def update_job(
        self,
        caller: str,
        job_id: int,
        command: Optional[str] = None,
        database: Optional[str] = None,
        schedule: Optional[str] = None,
        principal: Optional[str] = None,
        description: Optional[str] = None,
        enabled: Optional[bool] = None,
        timeout: Optional[timedelta] = None,
        parallel: Optional[bool] = None,
    ) -> Job:
        """Update the given job with the provided values; None leaves a value unchanged."""
        changes = JobChanges(
            command=command,
            database=database,
            schedule=schedule,
            principal=principal,
            description=description,
            enabled=enabled,
            timeout=timeout,
            parallel=parallel,
        )
        arguments = (job_id, command, database, schedule, principal, description, enabled, timeout, parallel)
        with self._audit(caller, f"update_job(job_id, {JOB_FIELDS})", arguments, job_id=job_id) as call:
            current = self._visible_job(caller, job_id)
            job = self.store.update_job(self.validator.validate(changes.apply(current), caller))
            call.rows = 1
            logger.info("Updated job %s", job.job_id)
            return job

    def delete_job(self, caller: str, job_id: int) -> Job:
        """Delete the job and return the deleted record."""
        with self._audit(caller, "delete_job(job_id)", (job_id,), job_id=job_id) as call:
            self._visible_job(caller, job_id)
            job = self.store.delete_job(job_id)
            # the run log keeps no reference to a deleted job
            call.job_id, call.rows = None, 1
            logger.info("Deleted job %s", job_id)
            return job

    def get_job(self, caller: str, job_id: int) -> Job:
        with self._audit(caller, "get_job(job_id)", (job_id,), job_id=job_id) as call:
            job = self._visible_job(caller, job_id)
            call.rows = 1
            return job

    def list_jobs(self, caller: str, owned_only: bool = False) -> List[Job]:
        """Jobs of the caller, or of every principal the caller is a member of."""
        with self._audit(caller, "list_jobs(owned_only)", (owned_only,)) as call:
            jobs = [job for job in self.store.list_jobs() if self._sees(caller, job.principal, owned_only)]
            call.rows = len(jobs)
            return jobs

    def job_logs(self, caller: str, owned_only: bool = False, job_id: Optional[int] = None) -> List[JobLog]:
        with self._audit(caller, "job_logs(owned_only, job_id)", (owned_only, job_id)) as call:
            logs = [log for log in self.store.job_logs(job_id) if self._sees(caller, log.principal, owned_only)]
            call.rows = len(logs)
            return logs

    def jobs_scheduled_at(self, caller: str, at: Optional[datetime] = None) -> List[Job]:
        """Enabled jobs the caller may see that are due at ``at`` (default: now)."""
        moment = at or self.clock()
        with self._audit(caller, "jobs_scheduled_at(scheduled)", (moment,)) as call:
            jobs = [job for job in self.store.jobs_scheduled_at(moment) if self._sees(caller, job.principal)]
            call.rows = len(jobs)
            return jobs

    def next_runs(self, caller: str, job_id: int, count: int = 5, after: Optional[datetime] = None) -> List[datetime]:
        """Preview the next ``count`` firing instants of a job."""
        with self._audit(caller, "next_runs(job_id, count, after)", (job_id, count, after), job_id=job_id) as call:
            job = self._visible_job(caller, job_id)
            schedule = job.parsed_schedule()
            runs = next_fire_times(schedule, count, after or self.clock()) if schedule else []
            call.rows = len(runs)
            return runs

    def _sees(self, caller: str, principal: str, owned_only: bool = False) -> bool:
        if owned_only:
            return caller == principal
        return self.directory.is_member(caller, principal)

    def _visible_job(self, caller: str, job_id: int) -> Job:
        job = self.store.get_job(job_id)
        if job is None or not self._sees(caller, job.principal):
            raise JobNotFoundError(f"Error: job {job_id} does not exist.")
        return job

    @contextmanager
    def _audit(self, caller: str, signature: str, arguments: Sequence[object], job_id: Optional[int] = None) -> Iterator[_Call]:
        call = _Call(job_id=job_id)
        started = self.clock()
        failure: Optional[BaseException] = None
        try:
            yield call
        except Exception as exc:
            failure = exc
            if isinstance(exc, JobNotFoundError):
                call.job_id = None
            raise
        finally:
            code = message = detail = hint = None
            if failure is not None:
                code, message, detail, hint = error_fields(failure)
                logger.warning("%s by %s failed: %s", signature.split("(")[0], caller, message)
            self.store.append_run_log(
                RunLog(
                    user_name=caller,
                    function_signature=signature,
                    function_arguments=tuple(_snapshot(value) for value in arguments),
                    job_id=call.job_id,
                    run_started=started,
                    run_finished=self.clock(),
                    rows_returned=call.rows,
                    error_code=code,
                    error_message=message,
                    error_detail=detail,
                    error_hint=hint,
                )
            )


def _snapshot(value: object) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)
