from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from foreman.dispatcher import Dispatcher
from foreman.errors import JobDefinitionError
from foreman.jobs import Job, RunOutcome
from foreman.store import InMemoryJobStore

UTC = timezone.utc
NOW = datetime(2024, 1, 8, 6, 30, 15, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _store_with(*jobs: Job) -> InMemoryJobStore:
    store = InMemoryJobStore()
    for job in jobs:
        store.insert_job(job)
    return store


def _job(command: str, schedule: str = "30 6 * * *", **overrides: object) -> Job:
    values = {"command": command, "database": "prod", "principal": "alice", "schedule": schedule}
    values.update(overrides)
    return Job(**values)


def test_tick_runs_due_jobs_and_records_outcomes() -> None:
    store = _store_with(_job("ok"), _job("fail"), _job("later", schedule="31 6 * * *"))
    ran: List[str] = []

    def executor(job: Job) -> Optional[RunOutcome]:
        ran.append(job.command)
        if job.command == "fail":
            return RunOutcome.failed("relation does not exist", error_code="42P01")
        return None

    dispatcher = Dispatcher(store, executor, clock=FakeClock(NOW))
    logs = [future.result() for future in dispatcher.tick()]
    dispatcher.close()

    assert sorted(ran) == ["fail", "ok"]
    by_command = {log.command: log for log in logs}
    assert by_command["ok"].success
    assert by_command["fail"].error_code == "42P01"
    assert by_command["fail"].error_message == "relation does not exist"

    ok_job, fail_job, later_job = store.list_jobs()
    assert (ok_job.success_count, ok_job.failure_count) == (1, 0)
    assert (fail_job.success_count, fail_job.failure_count) == (0, 1)
    assert ok_job.last_executed == NOW
    assert later_job.last_executed is None
    assert len(store.job_logs()) == 2


def test_executor_exceptions_are_recorded() -> None:
    store = _store_with(_job("raise"), _job("typed"))

    def executor(job: Job) -> Optional[RunOutcome]:
        if job.command == "typed":
            raise JobDefinitionError("Error: missing", detail="d", hint="h")
        raise RuntimeError("worker crashed")

    dispatcher = Dispatcher(store, executor, clock=FakeClock(NOW))
    logs = {f.result().command: f.result() for f in dispatcher.tick()}
    dispatcher.close()

    assert logs["raise"].error_code == "XX000"
    assert logs["raise"].error_message == "worker crashed"
    assert (logs["typed"].error_code, logs["typed"].error_detail, logs["typed"].error_hint) == ("23502", "d", "h")
    assert [job.failure_count for job in store.list_jobs()] == [1, 1]


def test_claim_is_released_after_run() -> None:
    store = _store_with(_job("ok"))
    dispatcher = Dispatcher(store, lambda job: None, clock=FakeClock(NOW))
    for future in dispatcher.tick():
        future.result()
    dispatcher.close()
    (job,) = store.list_jobs()
    assert store.admit(job, "other", at=NOW) is not None


def test_running_job_is_not_admitted_twice() -> None:
    store = _store_with(_job("slow", schedule="* * * * *"))
    started = threading.Event()
    release = threading.Event()

    def executor(job: Job) -> Optional[RunOutcome]:
        started.set()
        release.wait(5)
        return None

    clock = FakeClock(NOW)
    dispatcher = Dispatcher(store, executor, max_workers=2, clock=clock)
    first = dispatcher.tick()
    assert started.wait(5)
    clock.now = NOW + timedelta(minutes=1)
    second = dispatcher.tick()
    release.set()
    for future in first:
        future.result()
    dispatcher.close()

    assert len(first) == 1
    assert second == []


def test_parallel_job_overlaps() -> None:
    store = _store_with(_job("slow", schedule="* * * * *", parallel=True))
    release = threading.Event()

    def executor(job: Job) -> Optional[RunOutcome]:
        release.wait(5)
        return None

    clock = FakeClock(NOW)
    dispatcher = Dispatcher(store, executor, max_workers=2, clock=clock)
    first = dispatcher.tick()
    clock.now = NOW + timedelta(minutes=1)
    second = dispatcher.tick()
    release.set()
    for future in first + second:
        future.result()
    dispatcher.close()

    assert len(first) == len(second) == 1
    assert store.list_jobs()[0].success_count == 2


def test_poll_evaluates_each_minute_once() -> None:
    store = _store_with(_job("every", schedule="* * * * *", parallel=True))
    clock = FakeClock(NOW)
    dispatcher = Dispatcher(store, lambda job: None, clock=clock)

    assert len(dispatcher.poll()) == 1
    assert dispatcher.poll() == []
    clock.now = NOW + timedelta(minutes=3)
    catch_up = dispatcher.poll()
    for future in catch_up:
        future.result()
    dispatcher.close()

    assert len(catch_up) == 3
    assert store.list_jobs()[0].success_count == 4


def test_poll_catch_up_is_bounded(caplog: pytest.LogCaptureFixture) -> None:
    store = _store_with(_job("every", schedule="* * * * *", parallel=True))
    clock = FakeClock(NOW)
    dispatcher = Dispatcher(store, lambda job: None, clock=clock)
    for future in dispatcher.poll():
        future.result()

    clock.now = NOW + timedelta(hours=3)
    with caplog.at_level("WARNING", logger="foreman.dispatcher"):
        futures = dispatcher.poll()
    for future in futures:
        future.result()
    dispatcher.close()

    assert len(futures) == 60
    assert "Skipping 120 minute(s)" in caplog.text


def test_run_forever_stops_on_event() -> None:
    store = _store_with(_job("every", schedule="* * * * *"))
    stop = threading.Event()
    ran = threading.Event()

    def executor(job: Job) -> Optional[RunOutcome]:
        ran.set()
        stop.set()
        return None

    dispatcher = Dispatcher(store, executor, clock=FakeClock(NOW))
    worker = threading.Thread(target=dispatcher.run_forever, args=(stop, 0.01))
    worker.start()
    worker.join(5)

    assert not worker.is_alive()
    assert ran.is_set()
    assert store.list_jobs()[0].success_count == 1
