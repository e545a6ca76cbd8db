"""Durable priority job queue stored next to the task table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4

from sqlalchemy import delete, func, text
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from taskpilot.config import QueueSettings
from taskpilot.errors import QueueUnavailableError
from taskpilot.storage.common import optional_utc, to_db_datetime, to_utc_aware, utc_now
from taskpilot.storage.sqlmodel_models import AgentTask, QueueJob

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Queue job states."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


READY_STATUSES = (JobStatus.WAITING.value, JobStatus.DELAYED.value)


@dataclass(slots=True)
class QueueJobView:
    """Readable job view for workers."""

    job_id: str
    seq: int
    task_id: str
    user_id: str
    priority: int
    status: JobStatus
    attempts_made: int
    max_attempts: int
    run_no: int | None
    run_after: datetime
    worker_id: str | None
    heartbeat_at: datetime | None
    last_error: str | None
    created_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class QueueStats:
    """Aggregate job counts."""

    waiting: int = 0
    active: int = 0
    delayed: int = 0
    failed: int = 0
    completed: int = 0
    available: bool = True


class TaskQueue:
    """At-least-once job queue: higher priority first, FIFO among equals.

    A job is delivered again when its worker fails it (with exponential
    backoff) or stops heartbeating, so consumers must be idempotent.
    """

    def __init__(self, engine: Engine, settings: QueueSettings | None = None) -> None:
        self.engine = engine
        self.settings = settings or QueueSettings()

    def is_available(self) -> bool:
        """Probe the broker table; False when the store cannot be reached."""

        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1 FROM queue_jobs LIMIT 1"))
        except SQLAlchemyError as error:
            logger.warning("Queue unavailable: %s", error)
            return False
        return True

    def enqueue(
        self,
        task_id: str,
        user_id: str,
        *,
        priority: int,
        retry_count: int | None = None,
        delay: timedelta | None = None,
    ) -> str:
        """Submit a job and return its id; raises QueueUnavailableError when degraded.

        The job records the task run count at enqueue time so a redelivery
        cannot start another run once that one has been consumed.
        """

        if not self.is_available():
            raise QueueUnavailableError("Queue unavailable; manual processing required.")
        now = utc_now()
        job_id = f"job-{uuid4().hex}"
        max_attempts = self.settings.default_attempts if retry_count is None else retry_count
        try:
            with Session(self.engine) as session:
                run_no = session.exec(
                    select(AgentTask.run_count).where(AgentTask.task_id == task_id),
                ).one_or_none()
                session.add(
                    QueueJob(
                        job_id=job_id,
                        task_id=task_id,
                        user_id=user_id,
                        priority=priority,
                        status=(JobStatus.DELAYED if delay else JobStatus.WAITING).value,
                        attempts_made=0,
                        max_attempts=max(1, max_attempts),
                        run_no=run_no,
                        run_after=to_db_datetime(now + delay if delay else now),
                        created_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise QueueUnavailableError(
                f"Queue unavailable; manual processing required ({error})",
            ) from error
        logger.debug("Enqueued job %s for task %s at priority %d", job_id, task_id, priority)
        return job_id

    def dequeue(self, *, worker_id: str) -> QueueJobView | None:
        """Atomically claim the next ready job."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueJob)
                    .where(
                        col(QueueJob.status).in_(READY_STATUSES),
                        col(QueueJob.run_after) <= now,
                    )
                    .order_by(col(QueueJob.priority).desc(), col(QueueJob.id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.id) == candidate.id,
                        col(QueueJob.status) == candidate.status,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        worker_id=worker_id,
                        heartbeat_at=now,
                        attempts_made=candidate.attempts_made + 1,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                session.expire_all()
                claimed = session.exec(select(QueueJob).where(QueueJob.id == candidate.id)).one()
                return _to_job_view(claimed)

    def touch(self, *, job_id: str, worker_id: str) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.worker_id) == worker_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                )
                .values(heartbeat_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def complete(self, *, job_id: str, worker_id: str) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.worker_id) == worker_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str,
        retry: bool = True,
    ) -> JobStatus | None:
        """Schedule a delayed retry, or fail the job when attempts are exhausted."""

        now = utc_now()
        with Session(self.engine) as session:
            job = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
            if job is None or job.status != JobStatus.ACTIVE.value or job.worker_id != worker_id:
                return None
            if retry and job.attempts_made < job.max_attempts:
                status = JobStatus.DELAYED
                delay = self.backoff_seconds(job.attempts_made)
                values = {
                    "status": status.value,
                    "run_after": to_db_datetime(now + timedelta(seconds=delay)),
                    "worker_id": None,
                }
                logger.info(
                    "Job %s failed (attempt %d/%d); retrying in %.1fs: %s",
                    job_id,
                    job.attempts_made,
                    job.max_attempts,
                    delay,
                    error,
                )
            else:
                status = JobStatus.FAILED
                values = {"status": status.value, "finished_at": to_db_datetime(now)}
                logger.warning(
                    "Job %s failed permanently after %d attempts: %s",
                    job_id,
                    job.attempts_made,
                    error,
                )
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                    col(QueueJob.worker_id) == worker_id,
                )
                .values(last_error=error, updated_at=to_db_datetime(now), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            return status

    def backoff_seconds(self, attempt: int) -> float:
        """Exponential backoff for the retry after `attempt` (1-based)."""

        delay = self.settings.backoff_base_seconds * (2 ** max(0, attempt - 1))
        return min(delay, self.settings.backoff_max_seconds)

    def recover_stale(self, *, stale_after: timedelta) -> int:
        """Redeliver active jobs whose worker stopped heartbeating."""

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        recovered = 0
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob).where(
                    QueueJob.status == JobStatus.ACTIVE.value,
                    col(QueueJob.heartbeat_at) < cutoff,
                ),
            ).all()
            for row in rows:
                worker_id = row.worker_id
                exhausted = row.attempts_made >= row.max_attempts
                values = (
                    {"status": JobStatus.FAILED.value, "finished_at": to_db_datetime(now)}
                    if exhausted
                    else {"status": JobStatus.WAITING.value, "worker_id": None}
                )
                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.id) == row.id,
                        col(QueueJob.status) == JobStatus.ACTIVE.value,
                        col(QueueJob.heartbeat_at) == row.heartbeat_at,
                    )
                    .values(
                        last_error=f"stale worker {worker_id}",
                        updated_at=to_db_datetime(now),
                        **values,
                    ),
                )
                if result.rowcount == 1:
                    recovered += 1
                    logger.warning(
                        "Recovered stale job %s from worker %s (%s)",
                        row.job_id,
                        worker_id,
                        values["status"],
                    )
            session.commit()
        return recovered

    def get_job(self, job_id: str) -> QueueJobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(self, *, task_id: str) -> list[QueueJobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob)
                .where(QueueJob.task_id == task_id)
                .order_by(col(QueueJob.id).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def stats(self) -> QueueStats:
        if not self.is_available():
            return QueueStats(available=False)
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob.status, func.count()).group_by(QueueJob.status),
            ).all()
        counts = {status: int(count) for status, count in rows}
        return QueueStats(
            waiting=counts.get(JobStatus.WAITING.value, 0),
            active=counts.get(JobStatus.ACTIVE.value, 0),
            delayed=counts.get(JobStatus.DELAYED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            available=True,
        )

    def clean(self, *, now: datetime | None = None) -> int:
        """Drop finished jobs past their retention window."""

        now = now or utc_now()
        completed_cutoff = to_db_datetime(
            now - timedelta(hours=self.settings.completed_retention_hours),
        )
        failed_cutoff = to_db_datetime(now - timedelta(days=self.settings.failed_retention_days))
        with Session(self.engine) as session:
            completed = session.exec(
                delete(QueueJob).where(
                    col(QueueJob.status) == JobStatus.COMPLETED.value,
                    col(QueueJob.finished_at) < completed_cutoff,
                ),
            )
            failed = session.exec(
                delete(QueueJob).where(
                    col(QueueJob.status) == JobStatus.FAILED.value,
                    col(QueueJob.finished_at) < failed_cutoff,
                ),
            )
            session.commit()
        return int(completed.rowcount or 0) + int(failed.rowcount or 0)


def _to_job_view(row: QueueJob) -> QueueJobView:
    return QueueJobView(
        job_id=row.job_id,
        seq=row.id or 0,
        task_id=row.task_id,
        user_id=row.user_id,
        priority=row.priority,
        status=JobStatus(row.status),
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        run_no=row.run_no,
        run_after=to_utc_aware(row.run_after),
        worker_id=row.worker_id,
        heartbeat_at=optional_utc(row.heartbeat_at),
        last_error=row.last_error,
        created_at=to_utc_aware(row.created_at),
        finished_at=optional_utc(row.finished_at),
    )
