from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from itertools import count
from threading import Lock
from typing import Dict, List, Optional, Set, Tuple

from foreman.errors import JobNotFoundError, UniquenessConflictError
from foreman.jobs import Claim, Job, JobLog, RunLog
from foreman.parser import parse_schedule
from foreman.schedule import (
    DOM,
    DOW,
    HOUR,
    MINUTE,
    MONTH,
    TIMESTAMP,
    Slot,
    ensure_aware_utc,
    instant_slots,
    schedule_slots,
    utc_now,
)

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Persistence for jobs, their logs and their admission claims.

    Jobs handed to a store have already passed JobLifecycleValidator; the
    store enforces uniqueness of the definition and keeps the per-field
    schedule index that answers :meth:`jobs_scheduled_at`.
    """

    @abstractmethod
    def insert_job(self, job: Job) -> Job:
        raise NotImplementedError

    @abstractmethod
    def get_job(self, job_id: int) -> Optional[Job]:
        raise NotImplementedError

    @abstractmethod
    def update_job(self, job: Job) -> Job:
        raise NotImplementedError

    @abstractmethod
    def delete_job(self, job_id: int) -> Job:
        raise NotImplementedError

    @abstractmethod
    def list_jobs(self) -> List[Job]:
        raise NotImplementedError

    @abstractmethod
    def jobs_scheduled_at(self, at: datetime) -> List[Job]:
        """Enabled jobs whose schedule matches the minute containing ``at``."""
        raise NotImplementedError

    @abstractmethod
    def mark_started(self, job_id: int, at: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def record_outcome(self, job_id: int, success: bool) -> None:
        """Atomically bump success_count (resetting failure_count) or failure_count."""
        raise NotImplementedError

    @abstractmethod
    def append_job_log(self, log: JobLog) -> JobLog:
        raise NotImplementedError

    @abstractmethod
    def append_run_log(self, log: RunLog) -> RunLog:
        raise NotImplementedError

    @abstractmethod
    def job_logs(self, job_id: Optional[int] = None) -> List[JobLog]:
        raise NotImplementedError

    @abstractmethod
    def run_logs(self, job_id: Optional[int] = None) -> List[RunLog]:
        raise NotImplementedError

    @abstractmethod
    def _claim_exclusive(self, claim: Claim) -> bool:
        raise NotImplementedError

    @abstractmethod
    def _release_exclusive(self, claim: Claim) -> None:
        raise NotImplementedError

    def admit(self, job: Job, worker: str, at: Optional[datetime] = None) -> Optional[Claim]:
        """Admit one execution of ``job``.

        Parallel jobs are always admitted. Other jobs need an exclusive claim,
        valid until the job's timeout has passed; None means another
        execution is still in flight.
        """
        if job.job_id is None:
            raise JobNotFoundError("Error: cannot admit a job that has not been stored.")
        now = ensure_aware_utc(at or utc_now())
        claim = Claim(
            job_id=job.job_id,
            worker=worker,
            token=uuid.uuid4().hex,
            exclusive=not job.parallel,
            claimed_at=now,
            expires_at=now + job.timeout,
        )
        if not claim.exclusive:
            return claim
        if self._claim_exclusive(claim):
            return claim
        logger.warning("Job %s is already running; admission refused for %s.", job.job_id, worker)
        return None

    def release(self, claim: Claim) -> None:
        if claim.exclusive:
            self._release_exclusive(claim)


class InMemoryJobStore(JobStore):
    """Thread-safe in-process store with inverted schedule indexes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ids = count(1)
        self._job_log_ids = count(1)
        self._run_log_ids = count(1)
        self._jobs: Dict[int, Job] = {}
        self._definitions: Dict[Tuple[str, Optional[str], str, str], int] = {}
        self._index: Dict[Slot, Set[int]] = {}
        self._job_logs: List[JobLog] = []
        self._run_logs: List[RunLog] = []
        self._claims: Dict[int, Claim] = {}

    def insert_job(self, job: Job) -> Job:
        with self._lock:
            self._check_unique(job, None)
            stored = replace(job, job_id=next(self._ids))
            self._put(stored)
            return replace(stored)

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def update_job(self, job: Job) -> Job:
        with self._lock:
            current = self._require(job.job_id)
            self._check_unique(job, job.job_id)
            self._drop(current)
            # counters and last_executed belong to the run bookkeeping, not the definition
            stored = replace(
                job,
                failure_count=current.failure_count,
                success_count=current.success_count,
                last_executed=current.last_executed,
            )
            self._put(stored)
            return replace(stored)

    def delete_job(self, job_id: int) -> Job:
        with self._lock:
            current = self._require(job_id)
            self._drop(current)
            self._claims.pop(job_id, None)
            self._run_logs = [
                replace(log, job_id=None) if log.job_id == job_id else log for log in self._run_logs
            ]
            return replace(current)

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return [replace(self._jobs[job_id]) for job_id in sorted(self._jobs)]

    def jobs_scheduled_at(self, at: datetime) -> List[Job]:
        keys = instant_slots(at)
        with self._lock:

            def hits(field: str) -> Set[int]:
                return self._index.get((field, keys[field]), set())

            crontab = hits(MINUTE) & hits(HOUR) & hits(MONTH) & (hits(DOM) | hits(DOW))
            due = crontab | hits(TIMESTAMP)
            return [replace(self._jobs[job_id]) for job_id in sorted(due) if self._jobs[job_id].enabled]

    def mark_started(self, job_id: int, at: datetime) -> None:
        with self._lock:
            job = self._require(job_id)
            job.last_executed = ensure_aware_utc(at)

    def record_outcome(self, job_id: int, success: bool) -> None:
        with self._lock:
            job = self._require(job_id)
            if success:
                job.success_count += 1
                job.failure_count = 0
            else:
                job.failure_count += 1

    def append_job_log(self, log: JobLog) -> JobLog:
        with self._lock:
            stored = replace(log, log_id=next(self._job_log_ids))
            self._job_logs.append(stored)
            return stored

    def append_run_log(self, log: RunLog) -> RunLog:
        with self._lock:
            stored = replace(log, log_id=next(self._run_log_ids))
            self._run_logs.append(stored)
            return stored

    def job_logs(self, job_id: Optional[int] = None) -> List[JobLog]:
        with self._lock:
            return [log for log in self._job_logs if job_id is None or log.job_id == job_id]

    def run_logs(self, job_id: Optional[int] = None) -> List[RunLog]:
        with self._lock:
            return [log for log in self._run_logs if job_id is None or log.job_id == job_id]

    def _claim_exclusive(self, claim: Claim) -> bool:
        with self._lock:
            held = self._claims.get(claim.job_id)
            if held is not None and held.expires_at > claim.claimed_at:
                return False
            self._claims[claim.job_id] = claim
            return True

    def _release_exclusive(self, claim: Claim) -> None:
        with self._lock:
            held = self._claims.get(claim.job_id)
            if held is not None and held.token == claim.token:
                del self._claims[claim.job_id]

    def _require(self, job_id: Optional[int]) -> Job:
        job = self._jobs.get(job_id) if job_id is not None else None
        if job is None:
            raise JobNotFoundError(f"Error: job {job_id} does not exist.")
        return job

    def _check_unique(self, job: Job, job_id: Optional[int]) -> None:
        owner = self._definitions.get(job.definition_key)
        if owner is not None and owner != job_id:
            raise UniquenessConflictError(
                "Error: duplicate job definition.",
                detail=f"Job {owner} already runs this command with this schedule for "
                f'"{job.principal}" at "{job.database}".',
            )

    def _put(self, job: Job) -> None:
        self._jobs[job.job_id] = job
        self._definitions[job.definition_key] = job.job_id
        if job.schedule is not None:
            for slot in schedule_slots(parse_schedule(job.schedule)):
                self._index.setdefault(slot, set()).add(job.job_id)

    def _drop(self, job: Job) -> None:
        self._jobs.pop(job.job_id, None)
        self._definitions.pop(job.definition_key, None)
        if job.schedule is not None:
            for slot in schedule_slots(parse_schedule(job.schedule)):
                bucket = self._index.get(slot)
                if bucket is not None:
                    bucket.discard(job.job_id)
                    if not bucket:
                        del self._index[slot]
