"""Persistent task repository: lifecycle, claims, checkpoints, credits, and schedules."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskpilot.errors import ClaimConflictError, NotFoundError, ValidationError
from taskpilot.orchestrator.models import (
    ExecutionPlan,
    StepCharge,
    TaskCreate,
    TaskEventView,
    TaskPriority,
    TaskStatus,
    TaskView,
    UsageRecordView,
    UserCreditView,
)
from taskpilot.orchestrator.trace import ExecutionState, decode_state, encode_state
from taskpilot.storage.alembic_runner import upgrade_head
from taskpilot.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from taskpilot.storage.sqlmodel_models import AgentTask, AgentTaskEvent, AppUser, UsageRecord

CLAIMABLE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.EXECUTING.value)
DUE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.COMPLETED.value)
FINISH_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PAUSED, TaskStatus.PENDING},
)
USAGE_TYPE_AGENT_STEP = "agent_step"


class TaskRepository:
    """Task persistence facade backed by SQLModel + SQLite.

    Rows are mutated with conditional ``UPDATE ... WHERE`` statements. A worker
    owns a task while ``claimed_by`` holds its id, and every owned write also
    checks ``version`` so a stale worker cannot advance a task after losing
    its claim.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        default_monthly_credits: int = 1_000,
    ) -> None:
        self.db_path = db_path
        self.default_monthly_credits = default_monthly_credits
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Users and credit budgets

    def ensure_user(
        self,
        *,
        user_id: str,
        credits_reset_at: datetime,
        display_name: str | None = None,
        monthly_credits: int | None = None,
    ) -> UserCreditView:
        """Create the user row when missing and return its budget."""

        with Session(self.engine) as session:
            row = session.get(AppUser, user_id)
            if row is not None:
                return _to_user_view(row)
            row = AppUser(
                user_id=user_id,
                display_name=display_name or user_id,
                monthly_credits=(
                    self.default_monthly_credits if monthly_credits is None else monthly_credits
                ),
                credits_used=0,
                credits_reset_at=to_db_datetime(credits_reset_at),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                row = session.get(AppUser, user_id)
                if row is None:
                    raise
            session.refresh(row)
            return _to_user_view(row)

    def get_user(self, user_id: str) -> UserCreditView | None:
        with Session(self.engine) as session:
            row = session.get(AppUser, user_id)
            return _to_user_view(row) if row is not None else None

    def set_monthly_credits(self, *, user_id: str, monthly_credits: int) -> UserCreditView:
        if monthly_credits < 0:
            raise ValidationError("Monthly credits must be >= 0.")
        with Session(self.engine) as session:
            row = session.get(AppUser, user_id)
            if row is None:
                raise NotFoundError(f"User not found: {user_id}")
            row.monthly_credits = monthly_credits
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_user_view(row)

    def reset_credits_if_due(
        self,
        *,
        user_id: str,
        now: datetime,
        next_reset_at: datetime,
    ) -> bool:
        """Zero `credits_used` when the reset date has passed; False when not due."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AppUser)
                .where(
                    col(AppUser.user_id) == user_id,
                    col(AppUser.credits_reset_at) <= to_db_datetime(now),
                )
                .values(
                    credits_used=0,
                    credits_reset_at=to_db_datetime(next_reset_at),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_usage(
        self,
        *,
        user_id: str,
        task_id: str | None = None,
        limit: int = 100,
    ) -> list[UsageRecordView]:
        with Session(self.engine) as session:
            statement = select(UsageRecord).where(UsageRecord.user_id == user_id)
            if task_id is not None:
                statement = statement.where(UsageRecord.task_id == task_id)
            rows = session.exec(
                statement.order_by(col(UsageRecord.id).asc()).limit(limit),
            ).all()
            return [_to_usage_view(row) for row in rows]

    # Task lifecycle

    def create_task(self, *, user_id: str, payload: TaskCreate) -> TaskView:
        """Create a pending task, optionally with its plan."""

        now = to_db_datetime(utc_now())
        task_id = payload.task_id or str(uuid4())
        priority = TaskPriority.parse(payload.priority)
        with Session(self.engine) as session:
            row = AgentTask(
                task_id=task_id,
                user_id=user_id,
                title=payload.title,
                description=payload.description,
                status=TaskStatus.PENDING.value,
                priority=priority.value,
                priority_weight=priority.weight,
                schedule=payload.schedule,
                timezone=payload.timezone,
                schedule_enabled=payload.schedule_enabled,
                next_run_at=(
                    to_db_datetime(payload.next_run_at) if payload.next_run_at is not None else None
                ),
                total_steps=payload.plan.total_steps if payload.plan is not None else 0,
                plan_json=dump_json(payload.plan.to_dict()) if payload.plan is not None else None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=user_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "priority": priority.value,
                    "total_steps": row.total_steps,
                    "schedule": payload.schedule,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def attach_plan(self, *, task_id: str, plan: ExecutionPlan) -> TaskView:
        """Persist the plan of a task that has none; plans are immutable once set."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if row.plan_json is not None:
                raise ValidationError(f"Task {task_id} already has a plan; create a new task.")
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.plan_json).is_(None),
                    col(AgentTask.version) == row.version,
                )
                .values(
                    plan_json=dump_json(plan.to_dict()),
                    total_steps=plan.total_steps,
                    version=row.version + 1,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimConflictError(task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=row.user_id,
                event_type="plan_attached",
                status_from=TaskStatus(row.status),
                status_to=TaskStatus(row.status),
                details={
                    "total_steps": plan.total_steps,
                    "estimated_credits": plan.estimated_credits,
                },
            )
            session.commit()
            session.expire_all()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def get_task(self, task_id: str, *, user_id: str | None = None) -> TaskView | None:
        """Load one task; with `user_id`, tasks of other users are invisible."""

        with Session(self.engine) as session:
            statement = select(AgentTask).where(AgentTask.task_id == task_id)
            if user_id is not None:
                statement = statement.where(AgentTask.user_id == user_id)
            row = session.exec(statement).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = select(AgentTask)
            if user_id is not None:
                statement = statement.where(AgentTask.user_id == user_id)
            if status is not None:
                statement = statement.where(AgentTask.status == status.value)
            rows = session.exec(
                statement.order_by(col(AgentTask.created_at).desc()).limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_events(self, *, task_id: str, limit: int | None = None) -> list[TaskEventView]:
        with Session(self.engine) as session:
            statement = (
                select(AgentTaskEvent)
                .where(AgentTaskEvent.task_id == task_id)
                .order_by(col(AgentTaskEvent.id).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            return [_to_event_view(row) for row in session.exec(statement).all()]

    # Worker ownership

    def claim_task(
        self,
        *,
        task_id: str,
        worker_id: str,
        run_no: int | None = None,
    ) -> TaskView | None:
        """Atomically take ownership of a pending or resumed task.

        Returns None when the task is already owned or not in a claimable
        state, which is how duplicate queue deliveries are detected. A claim
        starts a fresh run when the previous run finished, and otherwise keeps
        the step cursor so execution resumes. `run_no` is the run count the
        job was enqueued at: once the task has finished a later run, the job
        has already been served and the claim is refused.
        """

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                row = session.exec(
                    select(AgentTask).where(AgentTask.task_id == task_id),
                ).one_or_none()
                if (
                    row is None
                    or row.claimed_by is not None
                    or row.status not in CLAIMABLE_STATUSES
                ):
                    return None

                finished = row.state_json is not None and row.current_step >= row.total_steps
                if run_no is not None and row.run_count > run_no:
                    if finished:
                        return None
                    # the run started for this job is unfinished; continue it
                    fresh_run = False
                else:
                    fresh_run = row.state_json is None or finished
                values: dict[str, Any] = {
                    "status": TaskStatus.EXECUTING.value,
                    "claimed_by": worker_id,
                    "heartbeat_at": now,
                    "attempts": row.attempts + 1,
                    "version": row.version + 1,
                    "updated_at": now,
                }
                if fresh_run:
                    values.update(
                        current_step=0,
                        state_json=None,
                        result_json=None,
                        error=None,
                        run_count=row.run_count + 1,
                        started_at=now,
                        completed_at=None,
                        failed_at=None,
                    )

                result = session.exec(
                    sa_update(AgentTask)
                    .where(
                        col(AgentTask.task_id) == task_id,
                        col(AgentTask.claimed_by).is_(None),
                        col(AgentTask.version) == row.version,
                        col(AgentTask.status).in_(CLAIMABLE_STATUSES),
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    task_id=task_id,
                    user_id=row.user_id,
                    event_type="claimed",
                    status_from=TaskStatus(row.status),
                    status_to=TaskStatus.EXECUTING,
                    details={
                        "worker_id": worker_id,
                        "attempt": row.attempts + 1,
                        "fresh_run": fresh_run,
                        "run_no": values.get("run_count", row.run_count),
                    },
                )
                session.commit()
                session.expire_all()
                return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def touch_task(self, *, task_id: str, worker_id: str) -> bool:
        """Update heartbeat of an owned task without bumping its version."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.claimed_by) == worker_id,
                )
                .values(heartbeat_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def is_pause_requested(self, *, task_id: str) -> bool:
        with Session(self.engine) as session:
            flag = session.exec(
                select(AgentTask.pause_requested).where(AgentTask.task_id == task_id),
            ).one_or_none()
            return bool(flag)

    def checkpoint_step(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        version: int,
        run_no: int,
        current_step: int,
        state: ExecutionState,
        charge: StepCharge | None = None,
    ) -> int:
        """Persist step progress and its usage charge in one transaction.

        Returns the new row version. Raises ClaimConflictError when the worker
        no longer owns the task at `version`.
        """

        now = to_db_datetime(utc_now())
        credits = charge.credits if charge is not None else 0
        tokens = charge.tokens if charge is not None else 0
        duration_ms = charge.duration_ms if charge is not None else 0
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.claimed_by) == worker_id,
                    col(AgentTask.version) == version,
                )
                .values(
                    current_step=current_step,
                    state_json=encode_state(state),
                    total_credits=col(AgentTask.total_credits) + credits,
                    total_tokens=col(AgentTask.total_tokens) + tokens,
                    execution_time_ms=col(AgentTask.execution_time_ms) + duration_ms,
                    heartbeat_at=now,
                    version=version + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimConflictError(task_id)

            if credits:
                session.exec(
                    sa_update(AppUser)
                    .where(col(AppUser.user_id) == row.user_id)
                    .values(credits_used=col(AppUser.credits_used) + credits),
                )
            if charge is not None and (credits or tokens):
                # unique per (task, run, step); a duplicate fails the commit below
                session.add(
                    UsageRecord(
                        user_id=row.user_id,
                        task_id=task_id,
                        type=USAGE_TYPE_AGENT_STEP,
                        model=charge.model,
                        run_no=run_no,
                        step_number=charge.step_number,
                        credits=credits,
                        tokens=tokens,
                        metadata_json=dump_json(
                            {"action": charge.action, "duration_ms": charge.duration_ms},
                        ),
                        created_at=now,
                    ),
                )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ClaimConflictError(task_id) from error
            return version + 1

    def finish_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str,
        version: int,
        status: TaskStatus,
        state: ExecutionState | None = None,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        next_run_at: datetime | None = None,
    ) -> int:
        """Record the outcome of an owned run and release the claim.

        `PENDING` is the recurring reset: the run finished and the task waits
        for its next scheduled occurrence.
        """

        if status not in FINISH_STATUSES:
            raise ValueError(f"Unsupported finish status: {status}")
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "status": status.value,
            "claimed_by": None,
            "heartbeat_at": now,
            "pause_requested": False,
            "version": version + 1,
            "updated_at": now,
        }
        if state is not None:
            values["state_json"] = encode_state(state)
        if status in {TaskStatus.COMPLETED, TaskStatus.PENDING}:
            values.update(
                result_json=dump_json(result or {}),
                error=None,
                completed_at=now,
                last_run_at=now,
            )
        if status is TaskStatus.FAILED:
            values.update(error=error or "Task failed", failed_at=now)
        if next_run_at is not None:
            values["next_run_at"] = to_db_datetime(next_run_at)

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            update_result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.claimed_by) == worker_id,
                    col(AgentTask.version) == version,
                )
                .values(**values),
            )
            if update_result.rowcount != 1:
                session.rollback()
                raise ClaimConflictError(task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=row.user_id,
                event_type="rescheduled" if status is TaskStatus.PENDING else status.value,
                status_from=TaskStatus(row.status),
                status_to=status,
                details={
                    "worker_id": worker_id,
                    "current_step": row.current_step,
                    "error": error,
                    "next_run_at": next_run_at.isoformat() if next_run_at is not None else None,
                },
            )
            session.commit()
            return version + 1

    def release_claim(self, *, task_id: str, worker_id: str, reason: str) -> bool:
        """Give up ownership after an unexpected error so redelivery can resume."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.claimed_by) == worker_id,
                )
                .values(
                    claimed_by=None,
                    version=col(AgentTask.version) + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=row.user_id,
                event_type="claim_released",
                status_from=TaskStatus(row.status),
                status_to=TaskStatus(row.status),
                details={"worker_id": worker_id, "reason": reason},
            )
            session.commit()
            return True

    def release_stale_claims(self, *, stale_after: timedelta) -> int:
        """Release claims whose heartbeat is older than `stale_after`."""

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        released = 0
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentTask).where(
                    col(AgentTask.claimed_by).is_not(None),
                    col(AgentTask.heartbeat_at) < cutoff,
                ),
            ).all()
            for row in rows:
                result = session.exec(
                    sa_update(AgentTask)
                    .where(
                        col(AgentTask.task_id) == row.task_id,
                        col(AgentTask.claimed_by) == row.claimed_by,
                        col(AgentTask.version) == row.version,
                    )
                    .values(
                        claimed_by=None,
                        version=row.version + 1,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                released += 1
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    user_id=row.user_id,
                    event_type="claim_expired",
                    status_from=TaskStatus(row.status),
                    status_to=TaskStatus(row.status),
                    details={"worker_id": row.claimed_by},
                )
            session.commit()
        return released

    # User-facing transitions

    def request_pause(self, *, task_id: str, user_id: str) -> TaskView:
        """Pause at the next step boundary, or immediately when nothing runs yet."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_owned_task_row(session=session, task_id=task_id, user_id=user_id)
            status = TaskStatus(row.status)
            if status is TaskStatus.EXECUTING:
                statement = (
                    sa_update(AgentTask)
                    .where(
                        col(AgentTask.task_id) == task_id,
                        col(AgentTask.status) == TaskStatus.EXECUTING.value,
                    )
                    .values(pause_requested=True, updated_at=now)
                )
                event_type, status_to = "pause_requested", TaskStatus.EXECUTING
            elif status is TaskStatus.PENDING and row.claimed_by is None:
                statement = (
                    sa_update(AgentTask)
                    .where(
                        col(AgentTask.task_id) == task_id,
                        col(AgentTask.status) == TaskStatus.PENDING.value,
                        col(AgentTask.claimed_by).is_(None),
                        col(AgentTask.version) == row.version,
                    )
                    .values(
                        status=TaskStatus.PAUSED.value,
                        version=row.version + 1,
                        updated_at=now,
                    )
                )
                event_type, status_to = "paused", TaskStatus.PAUSED
            else:
                raise ValidationError(
                    f"Task is {status.value}; only executing or pending tasks can be paused.",
                )

            result = session.exec(statement)
            if result.rowcount != 1:
                session.rollback()
                raise ClaimConflictError(task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=user_id,
                event_type=event_type,
                status_from=status,
                status_to=status_to,
                details={"current_step": row.current_step},
            )
            session.commit()
            session.expire_all()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def prepare_resume(self, *, task_id: str, user_id: str) -> TaskView:
        """Move a paused task back to executing, keeping its cursor and payload."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_owned_task_row(session=session, task_id=task_id, user_id=user_id)
            if row.status != TaskStatus.PAUSED.value:
                raise ValidationError(f"Task is {row.status}; only paused tasks can be resumed.")
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.status) == TaskStatus.PAUSED.value,
                    col(AgentTask.version) == row.version,
                )
                .values(
                    status=TaskStatus.EXECUTING.value,
                    pause_requested=False,
                    version=row.version + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimConflictError(task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=user_id,
                event_type="resumed",
                status_from=TaskStatus.PAUSED,
                status_to=TaskStatus.EXECUTING,
                details={"current_step": row.current_step, "total_steps": row.total_steps},
            )
            session.commit()
            session.expire_all()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def revert_resume(self, *, task_id: str, version: int, reason: str) -> TaskView | None:
        """Put a resumed task back to paused when no job could be enqueued for it.

        Returns None when a worker already claimed or advanced the task.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.status) == TaskStatus.EXECUTING.value,
                    col(AgentTask.claimed_by).is_(None),
                    col(AgentTask.version) == version,
                )
                .values(
                    status=TaskStatus.PAUSED.value,
                    version=version + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=row.user_id,
                event_type="resume_reverted",
                status_from=TaskStatus.EXECUTING,
                status_to=TaskStatus.PAUSED,
                details={"reason": reason},
            )
            session.commit()
            session.expire_all()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    # Scheduling

    def find_due_tasks(self, *, now: datetime, limit: int) -> list[TaskView]:
        """Enabled schedules due at `now`, highest priority first."""

        with Session(self.engine) as session:
            rows = session.exec(
                self._due_filter(select(AgentTask), now=now)
                .order_by(
                    col(AgentTask.priority_weight).desc(),
                    col(AgentTask.next_run_at).asc(),
                    col(AgentTask.created_at).asc(),
                )
                .limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def count_due(self, *, now: datetime) -> int:
        with Session(self.engine) as session:
            statement = self._due_filter(
                select(func.count()).select_from(AgentTask),
                now=now,
            )
            return int(session.exec(statement).one())

    def count_scheduled(self) -> int:
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(AgentTask)
                    .where(
                        col(AgentTask.schedule_enabled).is_(True),
                        col(AgentTask.schedule).is_not(None),
                    ),
                ).one(),
            )

    def mark_scheduled_run(
        self,
        *,
        task_id: str,
        next_run_at: datetime,
        last_run_at: datetime,
    ) -> bool:
        """Advance the schedule ahead of an enqueue; completed tasks return to pending.

        The version is left untouched so a worker that already claimed the task
        keeps ownership. Calling it again with the previous `next_run_at` puts
        the task back on the due list.
        """

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(AgentTask)
                .where(col(AgentTask.task_id) == task_id)
                .values(
                    next_run_at=to_db_datetime(next_run_at),
                    last_run_at=to_db_datetime(last_run_at),
                    status=case(
                        (
                            col(AgentTask.status) == TaskStatus.COMPLETED.value,
                            TaskStatus.PENDING.value,
                        ),
                        else_=col(AgentTask.status),
                    ),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=row.user_id,
                event_type="scheduled",
                status_from=TaskStatus(row.status),
                status_to=(
                    TaskStatus.PENDING
                    if row.status == TaskStatus.COMPLETED.value
                    else TaskStatus(row.status)
                ),
                details={"next_run_at": next_run_at.isoformat()},
            )
            session.commit()
            return True

    def fail_task_without_claim(self, *, task_id: str, error: str) -> bool:
        """Fail an idle task (not owned by any worker), e.g. for lack of credits."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(AgentTask)
                .where(
                    col(AgentTask.task_id) == task_id,
                    col(AgentTask.claimed_by).is_(None),
                    col(AgentTask.version) == row.version,
                    col(AgentTask.status).in_(
                        (*DUE_STATUSES, TaskStatus.EXECUTING.value),
                    ),
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    error=error,
                    failed_at=now,
                    version=row.version + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=row.user_id,
                event_type="failed",
                status_from=TaskStatus(row.status),
                status_to=TaskStatus.FAILED,
                details={"error": error},
            )
            session.commit()
            return True

    def _due_filter(self, statement: Any, *, now: datetime) -> Any:
        return statement.where(
            col(AgentTask.schedule_enabled).is_(True),
            col(AgentTask.next_run_at).is_not(None),
            col(AgentTask.next_run_at) <= to_db_datetime(now),
            col(AgentTask.status).in_(DUE_STATUSES),
        )

    def _get_task_row(self, *, session: Session, task_id: str) -> AgentTask:
        row = session.exec(select(AgentTask).where(AgentTask.task_id == task_id)).one_or_none()
        if row is None:
            raise RuntimeError(f"Task not found: {task_id}")
        return row

    def _get_owned_task_row(self, *, session: Session, task_id: str, user_id: str) -> AgentTask:
        row = session.exec(
            select(AgentTask).where(
                AgentTask.task_id == task_id,
                AgentTask.user_id == user_id,
            ),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        user_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AgentTaskEvent(
                task_id=task_id,
                user_id=user_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_task_view(row: AgentTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=TaskPriority.parse(row.priority),
        priority_weight=row.priority_weight,
        schedule=row.schedule,
        timezone=row.timezone,
        schedule_enabled=row.schedule_enabled,
        next_run_at=optional_utc(row.next_run_at),
        last_run_at=optional_utc(row.last_run_at),
        current_step=row.current_step,
        total_steps=row.total_steps,
        attempts=row.attempts,
        run_count=row.run_count,
        total_credits=row.total_credits,
        total_tokens=row.total_tokens,
        execution_time_ms=row.execution_time_ms,
        error=row.error,
        claimed_by=row.claimed_by,
        heartbeat_at=optional_utc(row.heartbeat_at),
        version=row.version,
        pause_requested=row.pause_requested,
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        failed_at=optional_utc(row.failed_at),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        plan=(
            ExecutionPlan.from_dict(load_json_object(row.plan_json))
            if row.plan_json is not None
            else None
        ),
        state=decode_state(row.state_json),
        result=load_json_object(row.result_json) if row.result_json is not None else None,
    )


def _to_event_view(row: AgentTaskEvent) -> TaskEventView:
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware(row.created_at),
        details=load_json_object(row.details_json),
    )


def _to_usage_view(row: UsageRecord) -> UsageRecordView:
    return UsageRecordView(
        record_id=row.id or 0,
        user_id=row.user_id,
        task_id=row.task_id,
        type=row.type,
        model=row.model,
        run_no=row.run_no,
        step_number=row.step_number,
        credits=row.credits,
        tokens=row.tokens,
        created_at=to_utc_aware(row.created_at),
        metadata=load_json_object(row.metadata_json),
    )


def _to_user_view(row: AppUser) -> UserCreditView:
    return UserCreditView(
        user_id=row.user_id,
        display_name=row.display_name,
        monthly_credits=row.monthly_credits,
        credits_used=row.credits_used,
        credits_reset_at=to_utc_aware(row.credits_reset_at),
    )
