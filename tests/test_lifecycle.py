from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from foreman.errors import AuthorizationError, InvalidScheduleError, JobDefinitionError
from foreman.jobs import Job
from foreman.lifecycle import JobLifecycleValidator
from foreman.principals import StaticPrincipalDirectory

UTC = timezone.utc
NOW = datetime(2042, 12, 5, 13, 37, 21, tzinfo=UTC)


@pytest.fixture
def directory() -> StaticPrincipalDirectory:
    return StaticPrincipalDirectory({"alice": ["etl"], "bob": [], "etl": ["ops"], "ops": []})


@pytest.fixture
def validator(directory: StaticPrincipalDirectory) -> JobLifecycleValidator:
    return JobLifecycleValidator(directory, clock=lambda: NOW)


def test_principal_defaults_to_caller(validator: JobLifecycleValidator) -> None:
    job = validator.validate(Job(command="VACUUM", database="prod"), "alice")
    assert job.principal == "alice"


def test_member_may_schedule_for_role_transitively(validator: JobLifecycleValidator) -> None:
    assert validator.validate(Job(command="x", database="prod", principal="etl"), "alice").principal == "etl"
    assert validator.validate(Job(command="x", database="prod", principal="ops"), "alice").principal == "ops"


def test_non_member_is_refused(validator: JobLifecycleValidator) -> None:
    with pytest.raises(AuthorizationError) as excinfo:
        validator.validate(Job(command="x", database="prod", principal="etl"), "bob")
    assert excinfo.value.code == "42501"
    assert excinfo.value.message == "Insufficient privileges"
    assert 'role "etl"' in excinfo.value.detail


def test_unknown_principal_is_refused(validator: JobLifecycleValidator) -> None:
    with pytest.raises(AuthorizationError, match="Insufficient privileges"):
        validator.validate(Job(command="x", database="prod", principal="mallory"), "alice")


@pytest.mark.parametrize(
    "job",
    [
        Job(command="", database="prod"),
        Job(command="x", database="  "),
        Job(command="x", database="prod", failure_count=-1),
        Job(command="x", database="prod", timeout=timedelta(0)),
    ],
)
def test_bad_definitions_are_refused(validator: JobLifecycleValidator, job: Job) -> None:
    with pytest.raises(JobDefinitionError):
        validator.validate(job, "alice")


def test_invalid_schedule_is_refused(validator: JobLifecycleValidator) -> None:
    with pytest.raises(InvalidScheduleError):
        validator.validate(Job(command="x", database="prod", schedule="61 * * * *"), "alice")


def test_crontab_is_stored_as_written(validator: JobLifecycleValidator) -> None:
    job = validator.validate(Job(command="x", database="prod", schedule=" @daily "), "alice")
    assert job.schedule == "@daily"


def test_timestamps_are_stored_canonical(validator: JobLifecycleValidator) -> None:
    job = validator.validate(Job(command="x", database="prod", schedule="2042-12-06 15:00 +02"), "alice")
    assert job.schedule == '{"2042-12-06 13:00+00"}'


def test_fire_now_is_bumped_one_minute(validator: JobLifecycleValidator) -> None:
    job = validator.validate(Job(command="x", database="prod", schedule='{"2042-12-05 13:37 +00"}'), "alice")
    assert job.schedule == '{"2042-12-05 13:38+00"}'


def test_multiple_timestamps_are_never_bumped(validator: JobLifecycleValidator) -> None:
    schedule = '{"2042-12-05 13:37 +00","2042-12-06 13:37 +00"}'
    job = validator.validate(Job(command="x", database="prod", schedule=schedule), "alice")
    assert job.schedule == '{"2042-12-05 13:37+00","2042-12-06 13:37+00"}'


def test_directory_grant_and_revoke(directory: StaticPrincipalDirectory) -> None:
    assert not directory.is_member("bob", "ops")
    directory.grant("ops", "bob")
    assert directory.is_member("bob", "ops")
    directory.revoke("ops", "bob")
    assert not directory.is_member("bob", "ops")
    assert directory.is_member("bob", "bob")
    assert not directory.is_member("nobody", "nobody")
