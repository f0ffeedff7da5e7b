from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional

from foreman.config import load_settings, open_store, setup_logging
from foreman.errors import error_fields
from foreman.jobs import Claim, Job, JobLog, RunOutcome
from foreman.lifecycle import Clock
from foreman.recorder import RunRecorder, StoreRunRecorder
from foreman.schedule import truncate_minute, utc_now
from foreman.store import JobStore

logger = logging.getLogger(__name__)

Executor = Callable[[Job], Optional[RunOutcome]]

MAX_CATCH_UP_MINUTES = 60
ONE_MINUTE = timedelta(minutes=1)


class Dispatcher:
    """Runs due jobs on a thread pool.

    Each poll evaluates every minute since the previous one exactly once.
    A job is admitted through the store before it is submitted, so a
    non-parallel job never has two executions in flight, even across
    dispatchers sharing one database.
    """

    def __init__(
        self,
        store: JobStore,
        executor: Executor,
        recorder: Optional[RunRecorder] = None,
        worker_name: str = "foreman",
        max_workers: int = 4,
        poll_seconds: float = 10,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.executor = executor
        self.recorder = recorder or StoreRunRecorder(store)
        self.worker_name = worker_name
        self.poll_seconds = poll_seconds
        self.clock = clock or utc_now
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"{worker_name}-run")
        self._last_minute: Optional[datetime] = None

    @classmethod
    def from_config(cls, config_path: Path, executor: Executor) -> "Dispatcher":
        settings = load_settings(config_path)
        setup_logging(settings.log_file)
        return cls(
            open_store(settings),
            executor,
            worker_name=settings.worker_name,
            max_workers=settings.max_workers,
            poll_seconds=settings.poll_seconds,
        )

    def tick(self, at: Optional[datetime] = None) -> List["Future[JobLog]"]:
        """Dispatch every job due at the minute containing ``at``."""
        minute = truncate_minute(at or self.clock())
        futures: List["Future[JobLog]"] = []
        for job in self.store.jobs_scheduled_at(minute):
            claim = self.store.admit(job, self.worker_name, at=self.clock())
            if claim is None:
                continue
            logger.info("Dispatching job %s (%s@%s) scheduled for %s", job.job_id, job.principal, job.database, minute.isoformat())
            futures.append(self._pool.submit(self._run, job, claim))
        return futures

    def poll(self, now: Optional[datetime] = None) -> List["Future[JobLog]"]:
        """Tick every minute not yet evaluated, up to and including ``now``."""
        minute = truncate_minute(now or self.clock())
        if self._last_minute is None:
            start = minute
        else:
            start = self._last_minute + ONE_MINUTE
        if minute < start:
            return []

        missed = int((minute - start) / ONE_MINUTE) + 1
        if missed > MAX_CATCH_UP_MINUTES:
            skipped_until = minute - MAX_CATCH_UP_MINUTES * ONE_MINUTE
            logger.warning(
                "Skipping %s minute(s) from %s to %s; catching up on the last %s only.",
                missed - MAX_CATCH_UP_MINUTES,
                start.isoformat(),
                skipped_until.isoformat(),
                MAX_CATCH_UP_MINUTES,
            )
            start = skipped_until + ONE_MINUTE

        futures: List["Future[JobLog]"] = []
        cursor = start
        while cursor <= minute:
            futures.extend(self.tick(cursor))
            cursor += ONE_MINUTE
        self._last_minute = minute
        return futures

    def run_forever(self, stop_event: Optional[threading.Event] = None, poll_seconds: Optional[float] = None) -> None:
        stop = stop_event or threading.Event()
        interval = poll_seconds or self.poll_seconds
        logger.info("Starting dispatcher %s, poll_seconds=%s", self.worker_name, interval)
        try:
            while not stop.is_set():
                self.poll()
                stop.wait(interval)
        except KeyboardInterrupt:
            logger.info("Dispatcher interrupted by user.")
        finally:
            self.close()

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    def _run(self, job: Job, claim: Claim) -> JobLog:
        try:
            started = self.clock()
            self.recorder.run_started(job, started)
            try:
                outcome = self.executor(job) or RunOutcome.ok()
            except Exception as exc:
                code, message, detail, hint = error_fields(exc)
                outcome = RunOutcome(success=False, error_code=code, message=message, detail=detail, hint=hint)
            if not outcome.success and outcome.error_code is None:
                outcome = RunOutcome.failed(outcome.message or "Job failed.", detail=outcome.detail, hint=outcome.hint)

            log = JobLog(
                job_id=job.job_id,
                principal=job.principal or "",
                database=job.database,
                started_at=started,
                finished_at=self.clock(),
                command=job.command,
                error_code=outcome.error_code if not outcome.success else None,
                error_message=outcome.message if not outcome.success else None,
                error_detail=outcome.detail if not outcome.success else None,
                error_hint=outcome.hint if not outcome.success else None,
            )
            stored = self.recorder.run_finished(job, log)
            if stored.success:
                logger.info("Job %s succeeded", job.job_id)
            else:
                logger.error("Job %s failed (%s): %s", job.job_id, stored.error_code, stored.error_message)
            return stored
        finally:
            self.store.release(claim)
