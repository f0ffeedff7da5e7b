from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime

from foreman.errors import JobNotFoundError
from foreman.jobs import Job, JobLog
from foreman.store import JobStore

logger = logging.getLogger(__name__)


class RunRecorder(ABC):
    """Receives run start/finish events from the dispatcher."""

    @abstractmethod
    def run_started(self, job: Job, started_at: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def run_finished(self, job: Job, log: JobLog) -> JobLog:
        raise NotImplementedError


class StoreRunRecorder(RunRecorder):
    """Writes run bookkeeping to the job store.

    Start sets ``last_executed``; finish appends the job log and bumps the
    job's counters with an atomic increment.
    """

    def __init__(self, store: JobStore):
        self.store = store

    def run_started(self, job: Job, started_at: datetime) -> None:
        try:
            self.store.mark_started(job.job_id, started_at)
        except JobNotFoundError:
            logger.warning("Job %s was deleted before it started; last_executed not updated.", job.job_id)

    def run_finished(self, job: Job, log: JobLog) -> JobLog:
        stored = self.store.append_job_log(log)
        try:
            self.store.record_outcome(job.job_id, log.success)
        except JobNotFoundError:
            logger.warning("Job %s was deleted while running; counters not updated.", job.job_id)
        return stored
