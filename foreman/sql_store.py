"""SQLAlchemy backed job store.

Schedules are indexed in ``foreman_job_slot``: one row per allowed value of
every crontab field (or per timestamp), so "which jobs run at T" is a set
query over an index instead of parsing every schedule.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Interval,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    delete,
    event,
    exists,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from foreman.errors import JobNotFoundError, UniquenessConflictError
from foreman.jobs import Claim, Job, JobLog, RunLog
from foreman.parser import parse_schedule
from foreman.schedule import DOM, DOW, HOUR, MINUTE, MONTH, TIMESTAMP, ensure_aware_utc, instant_slots, schedule_slots
from foreman.store import JobStore

logger = logging.getLogger(__name__)

Base = declarative_base()


class JobRow(Base):
    __tablename__ = "foreman_job"

    job_id = Column(Integer, primary_key=True, autoincrement=True)
    database = Column(String(128), nullable=False)
    principal = Column(String(128), nullable=False)
    schedule = Column(Text, nullable=True)
    # coalesce(schedule, '') so the definition stays unique for unscheduled jobs
    schedule_key = Column(Text, nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    failure_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    parallel = Column(Boolean, nullable=False, default=False)
    command = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    timeout = Column(Interval, nullable=False)
    last_executed = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("database", "principal", "schedule_key", "command", name="job_unique_definition_and_schedule"),
        CheckConstraint("failure_count >= 0", name="job_failure_count_chk"),
        CheckConstraint("success_count >= 0", name="job_success_count_chk"),
    )


class JobSlotRow(Base):
    __tablename__ = "foreman_job_slot"

    job_id = Column(Integer, ForeignKey("foreman_job.job_id", ondelete="CASCADE"), primary_key=True)
    field = Column(String(16), primary_key=True)
    value = Column(String(32), primary_key=True)

    __table_args__ = (Index("ix_foreman_job_slot_lookup", "field", "value"),)


class JobLogRow(Base):
    __tablename__ = "foreman_job_log"

    # No foreign key: jobs may be deleted, or the log imported elsewhere.
    log_id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, nullable=True, index=True)
    principal = Column(String(128), nullable=False)
    database = Column(String(128), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=False)
    command = Column(Text, nullable=False)
    error_code = Column(String(5), nullable=True)
    error_message = Column(Text, nullable=True)
    error_detail = Column(Text, nullable=True)
    error_hint = Column(Text, nullable=True)


class RunLogRow(Base):
    __tablename__ = "foreman_run_log"

    log_id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Integer, ForeignKey("foreman_job.job_id", ondelete="SET NULL"), nullable=True, index=True)
    user_name = Column(String(128), nullable=False)
    function_signature = Column(Text, nullable=False)
    function_arguments = Column(JSON, nullable=False, default=list)
    run_started = Column(DateTime(timezone=True), nullable=True)
    run_finished = Column(DateTime(timezone=True), nullable=True)
    rows_returned = Column(BigInteger, nullable=True)
    error_code = Column(String(5), nullable=True)
    error_message = Column(Text, nullable=True)
    error_detail = Column(Text, nullable=True)
    error_hint = Column(Text, nullable=True)


class JobClaimRow(Base):
    __tablename__ = "foreman_job_claim"

    job_id = Column(Integer, primary_key=True)
    worker = Column(String(128), nullable=False)
    token = Column(String(32), nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


def create_store_engine(database_url: str) -> Engine:
    # For SQLite, allow cross-thread use because the dispatcher runs jobs
    # on a thread pool.
    kwargs = {}
    memory = database_url in ("sqlite://", "sqlite:///:memory:")
    if database_url.startswith("sqlite:"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if memory:
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, future=True, echo=False, pool_pre_ping=True, **kwargs)
    if database_url.startswith("sqlite:") and not memory:
        _begin_immediate(engine)
    return engine


def _begin_immediate(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write; two writers holding shared
    # locks then fail with "database is locked" instead of waiting.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlJobStore(JobStore):
    def __init__(self, database_url: str, create_tables: bool = True):
        self.database_url = database_url
        self.engine = create_store_engine(database_url)
        self._sessionmaker = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False, future=True)
        if create_tables:
            Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def insert_job(self, job: Job) -> Job:
        with self._sessionmaker() as s:
            row = JobRow(
                failure_count=job.failure_count,
                success_count=job.success_count,
                last_executed=job.last_executed,
            )
            _fill_definition(row, job)
            s.add(row)
            self._flush_definition(s, job)
            _write_slots(s, row.job_id, job.schedule)
            s.commit()
            logger.debug("Stored job %s", row.job_id)
            return _to_job(row)

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._sessionmaker() as s:
            row = s.get(JobRow, job_id)
            return _to_job(row) if row else None

    def update_job(self, job: Job) -> Job:
        with self._sessionmaker() as s:
            row = _require(s, job.job_id)
            schedule_changed = row.schedule != job.schedule
            _fill_definition(row, job)
            self._flush_definition(s, job)
            if schedule_changed:
                s.execute(delete(JobSlotRow).where(JobSlotRow.job_id == row.job_id))
                _write_slots(s, row.job_id, job.schedule)
            s.commit()
            return _to_job(row)

    def delete_job(self, job_id: int) -> Job:
        with self._sessionmaker() as s:
            row = _require(s, job_id)
            deleted = _to_job(row)
            # Run history survives the job; only the reference goes.
            s.execute(update(RunLogRow).where(RunLogRow.job_id == job_id).values(job_id=None))
            s.execute(delete(JobSlotRow).where(JobSlotRow.job_id == job_id))
            s.execute(delete(JobClaimRow).where(JobClaimRow.job_id == job_id))
            s.delete(row)
            s.commit()
            return deleted

    def list_jobs(self) -> List[Job]:
        with self._sessionmaker() as s:
            rows = s.execute(select(JobRow).order_by(JobRow.job_id)).scalars().all()
            return [_to_job(row) for row in rows]

    def jobs_scheduled_at(self, at: datetime) -> List[Job]:
        keys = instant_slots(at)

        def hit(field: str):
            return exists().where(
                JobSlotRow.job_id == JobRow.job_id,
                JobSlotRow.field == field,
                JobSlotRow.value == keys[field],
            )

        crontab = and_(hit(MINUTE), hit(HOUR), hit(MONTH), or_(hit(DOM), hit(DOW)))
        q = (
            select(JobRow)
            .where(JobRow.enabled.is_(True))
            .where(or_(crontab, hit(TIMESTAMP)))
            .order_by(JobRow.job_id)
        )
        with self._sessionmaker() as s:
            return [_to_job(row) for row in s.execute(q).scalars().all()]

    def mark_started(self, job_id: int, at: datetime) -> None:
        with self._sessionmaker() as s:
            result = s.execute(
                update(JobRow).where(JobRow.job_id == job_id).values(last_executed=ensure_aware_utc(at))
            )
            if result.rowcount == 0:
                raise JobNotFoundError(f"Error: job {job_id} does not exist.")
            s.commit()

    def record_outcome(self, job_id: int, success: bool) -> None:
        if success:
            values = {"success_count": JobRow.success_count + 1, "failure_count": 0}
        else:
            values = {"failure_count": JobRow.failure_count + 1}
        with self._sessionmaker() as s:
            result = s.execute(update(JobRow).where(JobRow.job_id == job_id).values(**values))
            if result.rowcount == 0:
                raise JobNotFoundError(f"Error: job {job_id} does not exist.")
            s.commit()

    def append_job_log(self, log: JobLog) -> JobLog:
        with self._sessionmaker() as s:
            row = JobLogRow(
                job_id=log.job_id,
                principal=log.principal,
                database=log.database,
                started_at=ensure_aware_utc(log.started_at),
                finished_at=ensure_aware_utc(log.finished_at),
                command=log.command,
                error_code=log.error_code,
                error_message=log.error_message,
                error_detail=log.error_detail,
                error_hint=log.error_hint,
            )
            s.add(row)
            s.commit()
            return _to_job_log(row)

    def append_run_log(self, log: RunLog) -> RunLog:
        with self._sessionmaker() as s:
            row = RunLogRow(
                job_id=log.job_id,
                user_name=log.user_name,
                function_signature=log.function_signature,
                function_arguments=list(log.function_arguments),
                run_started=log.run_started,
                run_finished=log.run_finished,
                rows_returned=log.rows_returned,
                error_code=log.error_code,
                error_message=log.error_message,
                error_detail=log.error_detail,
                error_hint=log.error_hint,
            )
            s.add(row)
            s.commit()
            return _to_run_log(row)

    def job_logs(self, job_id: Optional[int] = None) -> List[JobLog]:
        q = select(JobLogRow).order_by(JobLogRow.log_id)
        if job_id is not None:
            q = q.where(JobLogRow.job_id == job_id)
        with self._sessionmaker() as s:
            return [_to_job_log(row) for row in s.execute(q).scalars().all()]

    def run_logs(self, job_id: Optional[int] = None) -> List[RunLog]:
        q = select(RunLogRow).order_by(RunLogRow.log_id)
        if job_id is not None:
            q = q.where(RunLogRow.job_id == job_id)
        with self._sessionmaker() as s:
            return [_to_run_log(row) for row in s.execute(q).scalars().all()]

    def _claim_exclusive(self, claim: Claim) -> bool:
        with self._sessionmaker() as s:
            s.execute(
                delete(JobClaimRow).where(
                    JobClaimRow.job_id == claim.job_id,
                    JobClaimRow.expires_at <= claim.claimed_at,
                )
            )
            s.add(
                JobClaimRow(
                    job_id=claim.job_id,
                    worker=claim.worker,
                    token=claim.token,
                    claimed_at=claim.claimed_at,
                    expires_at=claim.expires_at,
                )
            )
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                return False
            return True

    def _release_exclusive(self, claim: Claim) -> None:
        with self._sessionmaker() as s:
            s.execute(
                delete(JobClaimRow).where(
                    JobClaimRow.job_id == claim.job_id,
                    JobClaimRow.token == claim.token,
                )
            )
            s.commit()

    def _flush_definition(self, s: Session, job: Job) -> None:
        try:
            s.flush()
        except IntegrityError as exc:
            s.rollback()
            raise UniquenessConflictError(
                "Error: duplicate job definition.",
                detail=f'A job already runs this command with this schedule for "{job.principal}" '
                f'at "{job.database}".',
            ) from exc


def _require(s: Session, job_id: Optional[int]) -> JobRow:
    row = s.get(JobRow, job_id) if job_id is not None else None
    if row is None:
        raise JobNotFoundError(f"Error: job {job_id} does not exist.")
    return row


def _fill_definition(row: JobRow, job: Job) -> None:
    row.database = job.database
    row.principal = job.principal
    row.schedule = job.schedule
    row.schedule_key = job.schedule or ""
    row.enabled = job.enabled
    row.parallel = job.parallel
    row.command = job.command
    row.description = job.description
    row.timeout = job.timeout


def _write_slots(s: Session, job_id: int, schedule: Optional[str]) -> None:
    if schedule is None:
        return
    for field, value in schedule_slots(parse_schedule(schedule)):
        s.add(JobSlotRow(job_id=job_id, field=field, value=value))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_aware_utc(value) if value is not None else None


def _to_job(row: JobRow) -> Job:
    return Job(
        job_id=row.job_id,
        database=row.database,
        principal=row.principal,
        schedule=row.schedule,
        enabled=bool(row.enabled),
        failure_count=int(row.failure_count),
        success_count=int(row.success_count),
        parallel=bool(row.parallel),
        command=row.command,
        description=row.description,
        timeout=row.timeout,
        last_executed=_aware(row.last_executed),
    )


def _to_job_log(row: JobLogRow) -> JobLog:
    return JobLog(
        log_id=row.log_id,
        job_id=row.job_id,
        principal=row.principal,
        database=row.database,
        started_at=_aware(row.started_at),
        finished_at=_aware(row.finished_at),
        command=row.command,
        error_code=row.error_code,
        error_message=row.error_message,
        error_detail=row.error_detail,
        error_hint=row.error_hint,
    )


def _to_run_log(row: RunLogRow) -> RunLog:
    return RunLog(
        log_id=row.log_id,
        job_id=row.job_id,
        user_name=row.user_name,
        function_signature=row.function_signature,
        function_arguments=tuple(row.function_arguments or ()),
        run_started=_aware(row.run_started),
        run_finished=_aware(row.run_finished),
        rows_returned=row.rows_returned,
        error_code=row.error_code,
        error_message=row.error_message,
        error_detail=row.error_detail,
        error_hint=row.error_hint,
    )
