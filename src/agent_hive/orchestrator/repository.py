"""Persistent state for agents, tasks, collaborations and events."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, case, delete, exists, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlmodel import Session, SQLModel, col, select

from agent_hive.orchestrator.errors import InvalidStateError, NotFoundError, ValidationError
from agent_hive.orchestrator.models import (
    ACTIVE_AGENT_STATUSES,
    IN_FLIGHT_TASK_STATUSES,
    AgentCreate,
    AgentDetails,
    AgentOutcome,
    AgentStatus,
    AgentView,
    AssignOutcome,
    CollaborationCreate,
    CollaborationStatus,
    CollaborationType,
    CollaborationView,
    EventSeverity,
    EventView,
    EventWrite,
    HeartbeatOutcome,
    OfflineResult,
    TagKind,
    TaskCreate,
    TaskDetails,
    TaskSelectionStrategy,
    TaskStatus,
    TaskView,
    VerificationStatus,
    is_legal_transition,
)
from agent_hive.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_hive.storage.sqlmodel_models import (
    AgentRow,
    AgentTagRow,
    CollaborationRow,
    EventRow,
    TaskDependencyRow,
    TaskRow,
)

logger = logging.getLogger(__name__)

_SEVERITY_LEVELS = {
    EventSeverity.INFO: logging.INFO,
    EventSeverity.WARNING: logging.WARNING,
    EventSeverity.ERROR: logging.ERROR,
    EventSeverity.CRITICAL: logging.CRITICAL,
}
_COMPLETION_SMOOTHING = 0.2
_ACTIVE_VALUES = [status.value for status in ACTIVE_AGENT_STATUSES]
_IN_FLIGHT_VALUES = [status.value for status in IN_FLIGHT_TASK_STATUSES]
_FINISHED_VALUES = [TaskStatus.COMPLETED.value, TaskStatus.DEAD_LETTER.value]


@dataclass(slots=True)
class QueueCounts:
    """Raw queue counters used by statistics and health reporting."""

    by_status: dict[str, int]
    blocked: int
    overdue: int
    ready: int
    needs_verification: int
    verification_failed: int
    by_priority: dict[int, int]


class OrchestratorRepository:
    """Orchestration persistence facade backed by SQLModel + SQLite.

    Every state transition is a single conditional UPDATE on the expected
    current status; a lost race is reported as ``False`` (not applied) and
    the transaction is rolled back.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)
        self._clock = clock
        self._id_factory = id_factory or (lambda: str(uuid4()))

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create tables that do not exist yet."""

        SQLModel.metadata.create_all(self.engine)

    def now(self) -> datetime:
        return to_utc_aware_datetime(self._clock())

    def new_id(self) -> str:
        return self._id_factory()

    # -- agents ---------------------------------------------------------------

    def create_agent(self, payload: AgentCreate) -> AgentView:
        """Persist a new idle agent with its capability and specialization tags."""

        now = self.now()
        agent_id = self.new_id()
        with Session(self.engine) as session:
            existing = session.exec(
                select(AgentRow.agent_id).where(AgentRow.name == payload.name),
            ).first()
            if existing is not None:
                raise ValidationError(f"Agent name already registered: {payload.name}")
            session.add(
                AgentRow(
                    agent_id=agent_id,
                    name=payload.name,
                    agent_type=payload.agent_type,
                    status=AgentStatus.IDLE.value,
                    max_concurrent_tasks=payload.max_concurrent_tasks,
                    configuration_json=dump_json(payload.configuration)
                    if payload.configuration
                    else None,
                    last_heartbeat_at=to_db_datetime(now),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.flush()
            for kind, tags in (
                (TagKind.CAPABILITY, payload.capabilities),
                (TagKind.SPECIALIZATION, payload.specializations),
            ):
                for tag in tags:
                    session.add(AgentTagRow(agent_id=agent_id, kind=kind.value, tag=tag))
            self._add_event(
                session,
                EventWrite(
                    event_type="agent_registered",
                    message=f"Agent {payload.name} registered",
                    agent_id=agent_id,
                    data={
                        "agent_type": payload.agent_type,
                        "capabilities": list(payload.capabilities),
                        "specializations": list(payload.specializations),
                        "max_concurrent_tasks": payload.max_concurrent_tasks,
                    },
                ),
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValidationError(f"Agent name already registered: {payload.name}") from error
        agent = self.get_agent(agent_id)
        if agent is None:  # pragma: no cover - committed above
            raise NotFoundError("Agent", agent_id)
        return agent

    def get_agent(self, agent_id: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.exec(select(AgentRow).where(AgentRow.agent_id == agent_id)).one_or_none()
            if row is None:
                return None
            return self._agent_views(session, [row])[0]

    def get_agent_details(self, agent_id: str, *, event_limit: int = 20) -> AgentDetails | None:
        agent = self.get_agent(agent_id)
        if agent is None:
            return None
        with Session(self.engine) as session:
            task_ids = session.exec(
                select(TaskRow.task_id)
                .where(
                    TaskRow.agent_id == agent_id,
                    col(TaskRow.status).in_(_IN_FLIGHT_VALUES),
                )
                .order_by(col(TaskRow.assigned_at).asc()),
            ).all()
        events = self.list_events(agent_id=agent_id, limit=event_limit)
        return AgentDetails(agent=agent, in_flight_task_ids=list(task_ids), events=events)

    def list_agents(
        self,
        *,
        status: AgentStatus | None = None,
        agent_type: str | None = None,
        limit: int | None = None,
    ) -> list[AgentView]:
        """List agents, optionally filtered by status and type."""

        with Session(self.engine) as session:
            statement = select(AgentRow).order_by(
                col(AgentRow.created_at).asc(),
                col(AgentRow.agent_id).asc(),
            )
            if status is not None:
                statement = statement.where(AgentRow.status == status.value)
            if agent_type is not None:
                statement = statement.where(AgentRow.agent_type == agent_type)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return self._agent_views(session, list(rows))

    def find_agents(  # noqa: PLR0913
        self,
        *,
        statuses: Iterable[AgentStatus] = ACTIVE_AGENT_STATUSES,
        agent_type: str | None = None,
        capability: str | None = None,
        specialization: str | None = None,
        handles_task_type: str | None = None,
        exclude_ids: Iterable[str] = (),
        min_success_rate: float | None = None,
        with_capacity: bool = False,
    ) -> list[AgentView]:
        """Query agents with every filter pushed down to SQL."""

        statement = select(AgentRow).where(
            col(AgentRow.status).in_([status.value for status in statuses]),
        )
        if agent_type is not None:
            statement = statement.where(AgentRow.agent_type == agent_type)
        if capability is not None:
            statement = statement.where(_has_tag(TagKind.CAPABILITY, capability))
        if specialization is not None:
            statement = statement.where(_has_tag(TagKind.SPECIALIZATION, specialization))
        if handles_task_type is not None:
            statement = statement.where(
                or_(
                    col(AgentRow.agent_type) == handles_task_type,
                    _has_tag(TagKind.CAPABILITY, handles_task_type),
                ),
            )
        excluded = list(exclude_ids)
        if excluded:
            statement = statement.where(col(AgentRow.agent_id).not_in(excluded))
        if min_success_rate is not None:
            statement = statement.where(col(AgentRow.success_rate) >= min_success_rate)
        if with_capacity:
            statement = statement.where(
                col(AgentRow.current_task_count) < col(AgentRow.max_concurrent_tasks),
            )
        statement = statement.order_by(col(AgentRow.created_at).asc(), col(AgentRow.agent_id).asc())
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
            return self._agent_views(session, list(rows))

    def list_stale_agents(self, *, heartbeat_before: datetime) -> list[AgentView]:
        """Non-deregistered agents whose last heartbeat is older than the cutoff."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRow)
                .where(
                    AgentRow.status != AgentStatus.DEREGISTERED.value,
                    col(AgentRow.last_heartbeat_at) < to_db_datetime(heartbeat_before),
                )
                .order_by(col(AgentRow.last_heartbeat_at).asc(), col(AgentRow.agent_id).asc()),
            ).all()
            return self._agent_views(session, list(rows))

    def count_agents_by_status(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRow.status, func.count()).group_by(AgentRow.status),
            ).all()
        return {status: count for status, count in rows}

    def record_heartbeat(
        self,
        agent_id: str,
        *,
        sent_at: datetime | None = None,
    ) -> HeartbeatOutcome:
        """Stamp a heartbeat; revive an offline agent only when the beat postdates the offline decision."""

        now = self.now()
        beat = to_utc_aware_datetime(sent_at) if sent_at is not None else now
        while True:
            with Session(self.engine) as session:
                row = session.exec(
                    select(AgentRow).where(AgentRow.agent_id == agent_id),
                ).one_or_none()
                if row is None or row.status == AgentStatus.DEREGISTERED.value:
                    raise NotFoundError("Agent", agent_id)

                if row.status == AgentStatus.OFFLINE.value:
                    result = session.exec(
                        sa_update(AgentRow)
                        .where(
                            col(AgentRow.agent_id) == agent_id,
                            col(AgentRow.status) == AgentStatus.OFFLINE.value,
                            or_(
                                col(AgentRow.offline_at).is_(None),
                                col(AgentRow.offline_at) < to_db_datetime(beat),
                            ),
                        )
                        .values(
                            status=AgentStatus.IDLE.value,
                            stale=False,
                            current_task_count=0,
                            last_heartbeat_at=to_db_datetime(beat),
                            offline_at=None,
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    if result.rowcount == 1:
                        self._add_event(
                            session,
                            EventWrite(
                                event_type="agent_reactivated",
                                message=f"Agent {row.name} reactivated by heartbeat",
                                agent_id=agent_id,
                                data={"heartbeat_at": beat.isoformat()},
                            ),
                        )
                        session.commit()
                        return HeartbeatOutcome.REACTIVATED
                    session.rollback()
                    current = session.exec(
                        select(AgentRow.status).where(AgentRow.agent_id == agent_id),
                    ).one()
                    if current != AgentStatus.OFFLINE.value:
                        continue
                    self._add_event(
                        session,
                        EventWrite(
                            event_type="heartbeat_ignored",
                            message=f"Heartbeat for {row.name} predates its offline decision",
                            severity=EventSeverity.WARNING,
                            agent_id=agent_id,
                            data={
                                "heartbeat_at": beat.isoformat(),
                                "offline_at": optional_utc(row.offline_at).isoformat()
                                if row.offline_at is not None
                                else None,
                            },
                        ),
                    )
                    session.commit()
                    return HeartbeatOutcome.IGNORED

                result = session.exec(
                    sa_update(AgentRow)
                    .where(
                        col(AgentRow.agent_id) == agent_id,
                        col(AgentRow.status) == row.status,
                    )
                    .values(
                        last_heartbeat_at=to_db_datetime(beat),
                        stale=False,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return HeartbeatOutcome.RECORDED

    def take_agent_out_of_service(  # noqa: PLR0913
        self,
        agent_id: str,
        *,
        target: AgentStatus,
        from_statuses: Iterable[AgentStatus],
        reason: str,
        stale_before: datetime | None = None,
        health_penalty: float = 0.0,
    ) -> OfflineResult:
        """Move an agent to offline/failed/deregistered and requeue its in-flight tasks.

        The status change and the requeue happen in one transaction, so an
        offline agent never owns assigned or processing tasks. ``stale_before``
        makes the change conditional on the heartbeat still being stale.
        """

        now = self.now()
        with Session(self.engine) as session:
            row = session.exec(select(AgentRow).where(AgentRow.agent_id == agent_id)).one_or_none()
            if row is None:
                raise NotFoundError("Agent", agent_id)

            conditions = [
                col(AgentRow.agent_id) == agent_id,
                col(AgentRow.status).in_([status.value for status in from_statuses]),
            ]
            if stale_before is not None:
                conditions.append(
                    col(AgentRow.last_heartbeat_at) < to_db_datetime(stale_before),
                )
            values: dict[str, Any] = {
                "status": target.value,
                "current_task_count": 0,
                "updated_at": to_db_datetime(now),
            }
            if target == AgentStatus.OFFLINE:
                values["offline_at"] = to_db_datetime(now)
                values["stale"] = stale_before is not None
            if health_penalty:
                values["health_score"] = func.max(
                    col(AgentRow.health_score) - health_penalty,
                    0.0,
                )
            result = session.exec(sa_update(AgentRow).where(*conditions).values(**values))
            if result.rowcount != 1:
                session.rollback()
                return OfflineResult(applied=False)

            requeued = self._requeue_agent_tasks(
                session,
                agent_id=agent_id,
                reason=reason,
                now=now,
            )
            self._add_event(
                session,
                EventWrite(
                    event_type=f"agent_{target.value}",
                    message=f"Agent {row.name} marked {target.value}: {reason}",
                    severity=EventSeverity.INFO
                    if target == AgentStatus.DEREGISTERED
                    else EventSeverity.WARNING,
                    agent_id=agent_id,
                    data={
                        "status_from": row.status,
                        "status_to": target.value,
                        "reason": reason,
                        "requeued_task_ids": requeued,
                    },
                ),
            )
            session.commit()
            return OfflineResult(applied=True, requeued_task_ids=requeued)

    def refresh_agent_status(self, agent_id: str) -> None:
        """Set an active agent to busy/idle according to its current load."""

        now = self.now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(AgentRow)
                .where(
                    col(AgentRow.agent_id) == agent_id,
                    col(AgentRow.status).in_(_ACTIVE_VALUES),
                )
                .values(
                    status=case(
                        (col(AgentRow.current_task_count) > 0, AgentStatus.BUSY.value),
                        else_=AgentStatus.IDLE.value,
                    ),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()

    def mark_agent_busy(self, agent_id: str) -> bool:
        now = self.now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRow)
                .where(
                    col(AgentRow.agent_id) == agent_id,
                    col(AgentRow.status).in_(_ACTIVE_VALUES),
                )
                .values(status=AgentStatus.BUSY.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- tasks ----------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Persist a pending task; every dependency id must already exist."""

        now = self.now()
        task_id = payload.task_id or self.new_id()
        dependencies = list(dict.fromkeys(payload.dependencies))
        with Session(self.engine) as session:
            if dependencies:
                known = set(
                    session.exec(
                        select(TaskRow.task_id).where(col(TaskRow.task_id).in_(dependencies)),
                    ).all(),
                )
                missing = [task for task in dependencies if task not in known]
                if missing:
                    raise ValidationError(f"Unknown dependency task ids: {', '.join(missing)}")
            session.add(
                TaskRow(
                    task_id=task_id,
                    task_type=payload.task_type,
                    input_json=dump_json(payload.input) if payload.input is not None else None,
                    priority=payload.priority,
                    status=TaskStatus.PENDING.value,
                    verification_status=VerificationStatus.PENDING.value,
                    retry_count=0,
                    max_retries=payload.max_retries,
                    blocked_reason=payload.blocked_reason,
                    metadata_json=dump_json(payload.metadata) if payload.metadata else None,
                    deadline_at=to_db_datetime(payload.deadline_at)
                    if payload.deadline_at is not None
                    else None,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.flush()
            for dependency in dependencies:
                session.add(TaskDependencyRow(task_id=task_id, depends_on_task_id=dependency))
            self._add_event(
                session,
                EventWrite(
                    event_type="task_enqueued",
                    message=f"Task {task_id} ({payload.task_type}) enqueued",
                    task_id=task_id,
                    data={
                        "task_type": payload.task_type,
                        "priority": payload.priority,
                        "max_retries": payload.max_retries,
                        "dependencies": dependencies,
                    },
                ),
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValidationError(f"Task id already exists: {task_id}") from error
        return self._require_task(task_id)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                return None
            return self._task_views(session, [row])[0]

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        agent_id: str | None = None,
        limit: int | None = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status, type or owner."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(
                col(TaskRow.created_at).desc(),
                col(TaskRow.task_id).asc(),
            )
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            if task_type is not None:
                statement = statement.where(TaskRow.task_type == task_type)
            if agent_id is not None:
                statement = statement.where(TaskRow.agent_id == agent_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return self._task_views(session, list(rows))

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task with event stream and collaborations."""

        task = self.get_task(task_id)
        if task is None:
            return None
        events = self.list_events(task_id=task_id, ascending=True)
        collaborations = self.list_collaborations(task_id=task_id)
        return TaskDetails(task=task, events=events, collaborations=collaborations)

    def list_ready_tasks(
        self,
        *,
        order: TaskSelectionStrategy = TaskSelectionStrategy.PRIORITY_FIRST,
        limit: int | None = 1,
        exclude_ids: Iterable[str] = (),
    ) -> list[TaskView]:
        """Ready tasks: pending, unblocked, due, not overdue, dependencies completed."""

        now_db = to_db_datetime(self.now())
        statement = select(TaskRow).where(*_ready_conditions(now_db))
        excluded = list(exclude_ids)
        if excluded:
            statement = statement.where(col(TaskRow.task_id).not_in(excluded))
        if order == TaskSelectionStrategy.DEADLINE_FIRST:
            statement = statement.order_by(
                col(TaskRow.deadline_at).is_(None).asc(),
                col(TaskRow.deadline_at).asc(),
                col(TaskRow.priority).desc(),
                col(TaskRow.created_at).asc(),
                col(TaskRow.task_id).asc(),
            )
        elif order == TaskSelectionStrategy.DEPENDENCY_AWARE:
            dependents = (
                select(func.count())
                .select_from(TaskDependencyRow)
                .where(col(TaskDependencyRow.depends_on_task_id) == col(TaskRow.task_id))
                .correlate(TaskRow)
                .scalar_subquery()
            )
            statement = statement.order_by(
                col(TaskRow.priority).desc(),
                dependents.desc(),
                col(TaskRow.created_at).asc(),
                col(TaskRow.task_id).asc(),
            )
        else:
            statement = statement.order_by(
                col(TaskRow.priority).desc(),
                col(TaskRow.created_at).asc(),
                col(TaskRow.task_id).asc(),
            )
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
            return self._task_views(session, list(rows))

    def unmet_dependencies(self, task_id: str) -> list[str]:
        """Dependency ids of the task that are not completed yet."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDependencyRow.depends_on_task_id)
                .join(TaskRow, col(TaskRow.task_id) == col(TaskDependencyRow.depends_on_task_id))
                .where(
                    TaskDependencyRow.task_id == task_id,
                    TaskRow.status != TaskStatus.COMPLETED.value,
                ),
            ).all()
        return list(rows)

    def list_tasks_blocked_by_dead_letter(
        self,
        *,
        propagated_reason: str | None = None,
    ) -> list[tuple[str, str]]:
        """Pending unblocked tasks with a dead-lettered dependency: (task_id, dependency_id).

        With ``propagated_reason``, a pending dependency already blocked for that
        reason counts as dead-lettered too.
        """

        dependency = aliased(TaskRow)
        dead = dependency.status == TaskStatus.DEAD_LETTER.value
        if propagated_reason is not None:
            dead = or_(
                dead,
                and_(
                    dependency.status == TaskStatus.PENDING.value,
                    dependency.blocked_reason == propagated_reason,
                ),
            )
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow.task_id, TaskDependencyRow.depends_on_task_id)
                .join(
                    TaskDependencyRow,
                    col(TaskDependencyRow.task_id) == col(TaskRow.task_id),
                )
                .join(
                    dependency,
                    dependency.task_id == col(TaskDependencyRow.depends_on_task_id),
                )
                .where(
                    TaskRow.status == TaskStatus.PENDING.value,
                    col(TaskRow.blocked_reason).is_(None),
                    dead,
                )
                .order_by(col(TaskRow.created_at).asc()),
            ).all()
        seen: dict[str, str] = {}
        for task_id, dependency_id in rows:
            seen.setdefault(task_id, dependency_id)
        return list(seen.items())

    def block_task(self, task_id: str, *, reason: str, details: dict[str, Any]) -> bool:
        """Flag a pending task so no selection strategy returns it."""

        now = self.now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.PENDING.value,
                    col(TaskRow.blocked_reason).is_(None),
                )
                .values(blocked_reason=reason, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session,
                EventWrite(
                    event_type="task_blocked",
                    message=f"Task {task_id} blocked: {reason}",
                    severity=EventSeverity.WARNING,
                    task_id=task_id,
                    data=details,
                ),
            )
            session.commit()
            return True

    def assign_task(self, *, task_id: str, agent_id: str, strategy: str) -> AssignOutcome:
        """Claim one agent slot and assign a ready task in the same transaction.

        The slot claim is a compare-and-increment on ``current_task_count``,
        so concurrent assignments never exceed ``max_concurrent_tasks``.
        """

        now = self.now()
        with Session(self.engine) as session:
            claim = session.exec(
                sa_update(AgentRow)
                .where(
                    col(AgentRow.agent_id) == agent_id,
                    col(AgentRow.status).in_(_ACTIVE_VALUES),
                    col(AgentRow.current_task_count) < col(AgentRow.max_concurrent_tasks),
                )
                .values(
                    current_task_count=col(AgentRow.current_task_count) + 1,
                    status=AgentStatus.BUSY.value,
                    last_assigned_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if claim.rowcount != 1:
                session.rollback()
                return AssignOutcome.AGENT_UNAVAILABLE

            result = session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.task_id) == task_id, *_ready_conditions(to_db_datetime(now)))
                .values(
                    status=TaskStatus.ASSIGNED.value,
                    agent_id=agent_id,
                    assignment_strategy=strategy,
                    assigned_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return AssignOutcome.TASK_UNAVAILABLE

            self._add_event(
                session,
                EventWrite(
                    event_type="task_assigned",
                    message=f"Task {task_id} assigned to agent {agent_id}",
                    agent_id=agent_id,
                    task_id=task_id,
                    data={
                        "status_from": TaskStatus.PENDING.value,
                        "status_to": TaskStatus.ASSIGNED.value,
                        "strategy": strategy,
                    },
                ),
            )
            session.commit()
            return AssignOutcome.ASSIGNED

    def reassign_task(self, *, task_id: str, from_agent_id: str, to_agent_id: str) -> bool:
        """Move an assigned (not yet processing) task to another agent."""

        now = self.now()
        with Session(self.engine) as session:
            claim = session.exec(
                sa_update(AgentRow)
                .where(
                    col(AgentRow.agent_id) == to_agent_id,
                    col(AgentRow.status).in_(_ACTIVE_VALUES),
                    col(AgentRow.current_task_count) < col(AgentRow.max_concurrent_tasks),
                )
                .values(
                    current_task_count=col(AgentRow.current_task_count) + 1,
                    status=AgentStatus.BUSY.value,
                    last_assigned_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if claim.rowcount != 1:
                session.rollback()
                return False
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.ASSIGNED.value,
                    col(TaskRow.agent_id) == from_agent_id,
                )
                .values(
                    agent_id=to_agent_id,
                    assigned_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._release_agent_slot(session, agent_id=from_agent_id, now=now)
            self._add_event(
                session,
                EventWrite(
                    event_type="task_rebalanced",
                    message=f"Task {task_id} moved from {from_agent_id} to {to_agent_id}",
                    agent_id=to_agent_id,
                    task_id=task_id,
                    data={"from_agent_id": from_agent_id, "to_agent_id": to_agent_id},
                ),
            )
            session.commit()
            return True

    def transition_task(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        expected: TaskStatus,
        target: TaskStatus,
        event_type: str,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        values: dict[str, Any] | None = None,
        metadata_updates: dict[str, Any] | None = None,
        increment_retry: bool = False,
        agent_outcome: AgentOutcome | None = None,
        details: dict[str, Any] | None = None,
        expected_agent_id: str | None = None,
    ) -> bool:
        """Apply one legal status transition as a conditional update.

        Leaving ``assigned``/``processing`` releases the owning agent's slot
        in the same transaction. Returns ``False`` when the task is no longer
        in ``expected`` status, or no longer owned by ``expected_agent_id``
        when one is given.
        """

        if not is_legal_transition(expected, target):
            raise InvalidStateError(
                f"Illegal task transition {expected.value} -> {target.value} for {task_id}",
            )
        now = self.now()
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                raise NotFoundError("Task", task_id)
            if row.status != expected.value:
                return False
            if expected_agent_id is not None and row.agent_id != expected_agent_id:
                return False

            update_values: dict[str, Any] = {
                "status": target.value,
                "updated_at": to_db_datetime(now),
            }
            if target == TaskStatus.PENDING:
                update_values.update(
                    agent_id=None,
                    assigned_at=None,
                    started_at=None,
                    completed_at=None,
                )
            for key, value in (values or {}).items():
                update_values[key] = to_db_datetime(value) if isinstance(value, datetime) else value
            if metadata_updates:
                metadata = load_json(row.metadata_json, {})
                metadata.update(metadata_updates)
                update_values["metadata_json"] = dump_json(metadata)
            if increment_retry:
                update_values["retry_count"] = row.retry_count + 1

            owner_clause = (
                col(TaskRow.agent_id).is_(None)
                if row.agent_id is None
                else col(TaskRow.agent_id) == row.agent_id
            )
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == expected.value,
                    owner_clause,
                )
                .values(**update_values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            if row.agent_id is not None:
                if expected in IN_FLIGHT_TASK_STATUSES and target not in IN_FLIGHT_TASK_STATUSES:
                    self._release_agent_slot(session, agent_id=row.agent_id, now=now)
                if agent_outcome is not None:
                    self._apply_agent_outcome(
                        session,
                        agent_id=row.agent_id,
                        outcome=agent_outcome,
                        now=now,
                    )
            event_data: dict[str, Any] = {
                "status_from": expected.value,
                "status_to": target.value,
            }
            if increment_retry:
                event_data["retry_count"] = row.retry_count + 1
            event_data.update(details or {})
            self._add_event(
                session,
                EventWrite(
                    event_type=event_type,
                    message=message,
                    severity=severity,
                    agent_id=row.agent_id,
                    task_id=task_id,
                    data=event_data,
                ),
            )
            session.commit()
            return True

    def update_verification(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        status: VerificationStatus,
        verification: dict[str, Any],
        event_type: str,
        message: str,
        agent_outcome: AgentOutcome | None = None,
    ) -> bool:
        """Record a verification verdict on a completed, still-unverified task."""

        now = self.now()
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                raise NotFoundError("Task", task_id)
            metadata = load_json(row.metadata_json, {})
            metadata["verification"] = verification
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.COMPLETED.value,
                    col(TaskRow.verification_status) == VerificationStatus.PENDING.value,
                )
                .values(
                    verification_status=status.value,
                    metadata_json=dump_json(metadata),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if agent_outcome is not None and row.agent_id is not None:
                self._apply_agent_outcome(
                    session,
                    agent_id=row.agent_id,
                    outcome=agent_outcome,
                    now=now,
                )
            self._add_event(
                session,
                EventWrite(
                    event_type=event_type,
                    message=message,
                    agent_id=row.agent_id,
                    task_id=task_id,
                    data=verification,
                ),
            )
            session.commit()
            return True

    def update_task_metadata(self, task_id: str, updates: dict[str, Any]) -> None:
        """Merge keys into task metadata without touching status."""

        now = self.now()
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                raise NotFoundError("Task", task_id)
            metadata = load_json(row.metadata_json, {})
            metadata.update(updates)
            row.metadata_json = dump_json(metadata)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()

    def list_overdue_tasks(self) -> list[TaskView]:
        """Non-finished tasks whose deadline has passed."""

        now_db = to_db_datetime(self.now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    col(TaskRow.status).in_(
                        [
                            TaskStatus.PENDING.value,
                            TaskStatus.ASSIGNED.value,
                            TaskStatus.PROCESSING.value,
                        ],
                    ),
                    col(TaskRow.deadline_at).is_not(None),
                    col(TaskRow.deadline_at) <= now_db,
                )
                .order_by(col(TaskRow.deadline_at).asc()),
            ).all()
            return self._task_views(session, list(rows))

    def list_failed_tasks(self, *, retryable: bool | None = None) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = select(TaskRow).where(TaskRow.status == TaskStatus.FAILED.value)
            if retryable is True:
                statement = statement.where(col(TaskRow.retry_count) < col(TaskRow.max_retries))
            elif retryable is False:
                statement = statement.where(col(TaskRow.retry_count) >= col(TaskRow.max_retries))
            rows = session.exec(statement.order_by(col(TaskRow.updated_at).asc())).all()
            return self._task_views(session, list(rows))

    def list_unverified_tasks(self, *, limit: int | None = None) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = (
                select(TaskRow)
                .where(
                    TaskRow.status == TaskStatus.COMPLETED.value,
                    TaskRow.verification_status == VerificationStatus.PENDING.value,
                )
                .order_by(col(TaskRow.completed_at).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return self._task_views(session, list(rows))

    def queue_counts(self) -> QueueCounts:
        now_db = to_db_datetime(self.now())
        with Session(self.engine) as session:
            by_status = {
                status: count
                for status, count in session.exec(
                    select(TaskRow.status, func.count()).group_by(TaskRow.status),
                ).all()
            }
            by_priority = {
                priority: count
                for priority, count in session.exec(
                    select(TaskRow.priority, func.count())
                    .group_by(TaskRow.priority)
                    .order_by(col(TaskRow.priority).desc()),
                ).all()
            }
            blocked = _count(
                session,
                TaskRow.status == TaskStatus.PENDING.value,
                col(TaskRow.blocked_reason).is_not(None),
            )
            overdue = _count(
                session,
                col(TaskRow.status).in_(
                    [TaskStatus.PENDING.value, TaskStatus.ASSIGNED.value, TaskStatus.PROCESSING.value],
                ),
                col(TaskRow.deadline_at).is_not(None),
                col(TaskRow.deadline_at) <= now_db,
            )
            ready = _count(session, *_ready_conditions(now_db))
            needs_verification = _count(
                session,
                TaskRow.status == TaskStatus.COMPLETED.value,
                TaskRow.verification_status == VerificationStatus.PENDING.value,
            )
            verification_failed = _count(
                session,
                TaskRow.verification_status == VerificationStatus.FAILED.value,
            )
        return QueueCounts(
            by_status={status.value: by_status.get(status.value, 0) for status in TaskStatus},
            blocked=blocked,
            overdue=overdue,
            ready=ready,
            needs_verification=needs_verification,
            verification_failed=verification_failed,
            by_priority=by_priority,
        )

    def wait_samples(self, *, since: datetime) -> list[float]:
        """Seconds between creation and start for tasks started and completed since the cutoff."""

        since_db = to_db_datetime(since)
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow.created_at, TaskRow.started_at).where(
                    col(TaskRow.started_at).is_not(None),
                    col(TaskRow.completed_at).is_not(None),
                    col(TaskRow.started_at) >= since_db,
                    col(TaskRow.completed_at) >= since_db,
                ),
            ).all()
        return [
            (to_utc_aware_datetime(started) - to_utc_aware_datetime(created)).total_seconds()
            for created, started in rows
            if started is not None
        ]

    def processing_samples(self, *, since: datetime) -> list[float]:
        since_db = to_db_datetime(since)
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow.started_at, TaskRow.completed_at).where(
                    TaskRow.status == TaskStatus.COMPLETED.value,
                    col(TaskRow.started_at).is_not(None),
                    col(TaskRow.completed_at) >= since_db,
                ),
            ).all()
        return [
            (to_utc_aware_datetime(completed) - to_utc_aware_datetime(started)).total_seconds()
            for started, completed in rows
            if started is not None and completed is not None
        ]

    def count_tasks_since(self, *, since: datetime, status: TaskStatus | None = None) -> int:
        """Tasks created since the cutoff, or finished with ``status`` since the cutoff."""

        since_db = to_db_datetime(since)
        with Session(self.engine) as session:
            if status is None:
                return _count(session, col(TaskRow.created_at) >= since_db)
            timestamp = (
                TaskRow.completed_at if status == TaskStatus.COMPLETED else TaskRow.updated_at
            )
            return _count(
                session,
                TaskRow.status == status.value,
                col(timestamp) >= since_db,
            )

    def agent_totals(self) -> dict[str, float]:
        with Session(self.engine) as session:
            completed, failed = session.exec(
                select(
                    func.coalesce(func.sum(AgentRow.total_tasks_completed), 0),
                    func.coalesce(func.sum(AgentRow.total_tasks_failed), 0),
                ),
            ).one()
            average_success = session.exec(
                select(func.avg(AgentRow.success_rate)).where(
                    col(AgentRow.status).in_(_ACTIVE_VALUES),
                ),
            ).one()
        return {
            "total_tasks_completed": float(completed),
            "total_tasks_failed": float(failed),
            "average_success_rate": round(float(average_success or 0.0), 2),
        }

    def delete_finished_tasks(self, *, before: datetime) -> int:
        """Delete completed/dead-letter tasks older than the cutoff.

        Tasks that an unfinished task still depends on are kept.
        """

        before_db = to_db_datetime(before)
        dependent = aliased(TaskRow)
        with Session(self.engine) as session:
            candidates = session.exec(
                select(TaskRow.task_id).where(
                    col(TaskRow.status).in_(_FINISHED_VALUES),
                    col(TaskRow.updated_at) < before_db,
                    ~exists()
                    .where(
                        col(TaskDependencyRow.depends_on_task_id) == col(TaskRow.task_id),
                        col(TaskDependencyRow.task_id) == dependent.task_id,
                        dependent.status.not_in(_FINISHED_VALUES),
                    )
                    .correlate(TaskRow),
                ),
            ).all()
            task_ids = list(candidates)
            if not task_ids:
                return 0
            session.exec(
                delete(CollaborationRow).where(col(CollaborationRow.task_id).in_(task_ids)),
            )
            session.exec(
                delete(TaskDependencyRow).where(
                    or_(
                        col(TaskDependencyRow.task_id).in_(task_ids),
                        col(TaskDependencyRow.depends_on_task_id).in_(task_ids),
                    ),
                ),
            )
            result = session.exec(delete(TaskRow).where(col(TaskRow.task_id).in_(task_ids)))
            self._add_event(
                session,
                EventWrite(
                    event_type="tasks_cleaned_up",
                    message=f"Deleted {result.rowcount} finished tasks",
                    data={"before": to_utc_aware_datetime(before).isoformat()},
                ),
            )
            session.commit()
            return int(result.rowcount)

    # -- collaborations -------------------------------------------------------

    def create_collaboration(self, payload: CollaborationCreate) -> CollaborationView:
        now = self.now()
        collaboration_id = self.new_id()
        with Session(self.engine) as session:
            session.add(
                CollaborationRow(
                    collaboration_id=collaboration_id,
                    task_id=payload.task_id,
                    collaboration_type=payload.collaboration_type.value,
                    status=CollaborationStatus.PENDING.value,
                    primary_agent_id=payload.primary_agent_id,
                    settings_json=dump_json(payload.settings) if payload.settings else None,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            self._add_event(
                session,
                EventWrite(
                    event_type="collaboration_created",
                    message=(
                        f"{payload.collaboration_type.value.capitalize()} collaboration "
                        f"created for task {payload.task_id}"
                    ),
                    task_id=payload.task_id,
                    collaboration_id=collaboration_id,
                    data={"settings": payload.settings},
                ),
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise NotFoundError("Task", payload.task_id) from error
        return self._require_collaboration(collaboration_id)

    def get_collaboration(self, collaboration_id: str) -> CollaborationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CollaborationRow).where(
                    CollaborationRow.collaboration_id == collaboration_id,
                ),
            ).one_or_none()
        return _to_collaboration_view(row) if row is not None else None

    def list_collaborations(
        self,
        *,
        task_id: str | None = None,
        status: CollaborationStatus | None = None,
        collaboration_type: CollaborationType | None = None,
    ) -> list[CollaborationView]:
        with Session(self.engine) as session:
            statement = select(CollaborationRow).order_by(col(CollaborationRow.created_at).asc())
            if task_id is not None:
                statement = statement.where(CollaborationRow.task_id == task_id)
            if status is not None:
                statement = statement.where(CollaborationRow.status == status.value)
            if collaboration_type is not None:
                statement = statement.where(
                    CollaborationRow.collaboration_type == collaboration_type.value,
                )
            rows = session.exec(statement).all()
        return [_to_collaboration_view(row) for row in rows]

    def count_collaborations_since(self, *, since: datetime) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CollaborationRow.collaboration_type, func.count())
                .where(col(CollaborationRow.created_at) >= to_db_datetime(since))
                .group_by(CollaborationRow.collaboration_type),
            ).all()
        return {kind: count for kind, count in rows}

    def start_collaboration(self, collaboration_id: str, *, participants: list[str]) -> bool:
        """Fix the participant list and move pending -> in_progress."""

        now = self.now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CollaborationRow)
                .where(
                    col(CollaborationRow.collaboration_id) == collaboration_id,
                    col(CollaborationRow.status) == CollaborationStatus.PENDING.value,
                )
                .values(
                    status=CollaborationStatus.IN_PROGRESS.value,
                    participants_json=dump_json(participants),
                    started_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session,
                EventWrite(
                    event_type="collaboration_started",
                    message=f"Collaboration {collaboration_id} started",
                    collaboration_id=collaboration_id,
                    data={"participants": participants},
                ),
            )
            session.commit()
            return True

    def record_collaboration_result(
        self,
        collaboration_id: str,
        *,
        agent_id: str,
        result: dict[str, Any],
    ) -> bool:
        """Add one participant's result; results only grow while in progress."""

        now = self.now()
        with Session(self.engine) as session:
            # Touch first so the read below happens inside the write transaction.
            touched = session.exec(
                sa_update(CollaborationRow)
                .where(
                    col(CollaborationRow.collaboration_id) == collaboration_id,
                    col(CollaborationRow.status) == CollaborationStatus.IN_PROGRESS.value,
                )
                .values(updated_at=to_db_datetime(now)),
            )
            if touched.rowcount != 1:
                session.rollback()
                return False
            row = session.exec(
                select(CollaborationRow).where(
                    CollaborationRow.collaboration_id == collaboration_id,
                ),
            ).one()
            participants = load_json(row.participants_json, [])
            if agent_id not in participants:
                session.rollback()
                raise InvalidStateError(
                    f"Agent {agent_id} is not a participant of collaboration {collaboration_id}",
                )
            results = load_json(row.results_json, {})
            if agent_id in results:
                session.rollback()
                return False
            results[agent_id] = result
            row.results_json = dump_json(results)
            session.add(row)
            session.commit()
            return True

    def finish_collaboration(
        self,
        collaboration_id: str,
        *,
        status: CollaborationStatus,
        outcome: dict[str, Any],
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> bool:
        """Freeze a collaboration as completed or failed."""

        if status not in {CollaborationStatus.COMPLETED, CollaborationStatus.FAILED}:
            raise InvalidStateError(f"Unsupported terminal collaboration status: {status.value}")
        now = self.now()
        with Session(self.engine) as session:
            row = session.exec(
                select(CollaborationRow).where(
                    CollaborationRow.collaboration_id == collaboration_id,
                ),
            ).one_or_none()
            if row is None:
                raise NotFoundError("Collaboration", collaboration_id)
            result = session.exec(
                sa_update(CollaborationRow)
                .where(
                    col(CollaborationRow.collaboration_id) == collaboration_id,
                    col(CollaborationRow.status).in_(
                        [CollaborationStatus.PENDING.value, CollaborationStatus.IN_PROGRESS.value],
                    ),
                )
                .values(
                    status=status.value,
                    outcome_json=dump_json(outcome),
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session,
                EventWrite(
                    event_type=f"collaboration_{status.value}",
                    message=message,
                    severity=severity,
                    task_id=row.task_id,
                    collaboration_id=collaboration_id,
                    data=outcome,
                ),
            )
            session.commit()
            return True

    # -- events ---------------------------------------------------------------

    def add_event(self, event: EventWrite) -> None:
        with Session(self.engine) as session:
            self._add_event(session, event)
            session.commit()

    def list_events(  # noqa: PLR0913
        self,
        *,
        since: datetime | None = None,
        agent_id: str | None = None,
        task_id: str | None = None,
        severity: EventSeverity | None = None,
        limit: int | None = None,
        ascending: bool = False,
    ) -> list[EventView]:
        with Session(self.engine) as session:
            statement = select(EventRow)
            if since is not None:
                statement = statement.where(col(EventRow.occurred_at) >= to_db_datetime(since))
            if agent_id is not None:
                statement = statement.where(EventRow.agent_id == agent_id)
            if task_id is not None:
                statement = statement.where(EventRow.task_id == task_id)
            if severity is not None:
                statement = statement.where(EventRow.severity == severity.value)
            if ascending:
                statement = statement.order_by(col(EventRow.id).asc())
            else:
                statement = statement.order_by(col(EventRow.id).desc())
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_event_view(row) for row in rows]

    def count_events_by_severity(self, *, since: datetime) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(EventRow.severity, func.count())
                .where(col(EventRow.occurred_at) >= to_db_datetime(since))
                .group_by(EventRow.severity),
            ).all()
        counts = {severity.value: 0 for severity in EventSeverity}
        counts.update({severity: count for severity, count in rows})
        return counts

    # -- internals ------------------------------------------------------------

    def _require_task(self, task_id: str) -> TaskView:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def _require_collaboration(self, collaboration_id: str) -> CollaborationView:
        collaboration = self.get_collaboration(collaboration_id)
        if collaboration is None:
            raise NotFoundError("Collaboration", collaboration_id)
        return collaboration

    def _requeue_agent_tasks(
        self,
        session: Session,
        *,
        agent_id: str,
        reason: str,
        now: datetime,
    ) -> list[str]:
        rows = session.exec(
            select(TaskRow)
            .where(
                TaskRow.agent_id == agent_id,
                col(TaskRow.status).in_(_IN_FLIGHT_VALUES),
            )
            .order_by(col(TaskRow.assigned_at).asc()),
        ).all()
        requeued: list[str] = []
        for row in rows:
            metadata = load_json(row.metadata_json, {})
            metadata.update(
                {
                    "reassigned_from": agent_id,
                    "reassigned_at": now.isoformat(),
                    "reassignment_reason": reason,
                },
            )
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == row.task_id,
                    col(TaskRow.status) == row.status,
                    col(TaskRow.agent_id) == agent_id,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    agent_id=None,
                    assigned_at=None,
                    started_at=None,
                    metadata_json=dump_json(metadata),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                continue
            requeued.append(row.task_id)
            self._add_event(
                session,
                EventWrite(
                    event_type="task_reassigned",
                    message=f"Task {row.task_id} requeued after agent {agent_id} left service",
                    severity=EventSeverity.WARNING,
                    agent_id=agent_id,
                    task_id=row.task_id,
                    data={
                        "status_from": row.status,
                        "status_to": TaskStatus.PENDING.value,
                        "reason": reason,
                    },
                ),
            )
        return requeued

    def _release_agent_slot(self, session: Session, *, agent_id: str, now: datetime) -> None:
        session.exec(
            sa_update(AgentRow)
            .where(
                col(AgentRow.agent_id) == agent_id,
                col(AgentRow.status).in_(_ACTIVE_VALUES),
            )
            .values(
                current_task_count=case(
                    (col(AgentRow.current_task_count) > 0, col(AgentRow.current_task_count) - 1),
                    else_=0,
                ),
                status=case(
                    (col(AgentRow.current_task_count) > 1, AgentStatus.BUSY.value),
                    else_=AgentStatus.IDLE.value,
                ),
                updated_at=to_db_datetime(now),
            ),
        )

    def _apply_agent_outcome(
        self,
        session: Session,
        *,
        agent_id: str,
        outcome: AgentOutcome,
        now: datetime,
    ) -> None:
        row = session.exec(select(AgentRow).where(AgentRow.agent_id == agent_id)).one_or_none()
        if row is None:
            return
        row.total_tasks_completed += outcome.completed
        row.total_tasks_failed += outcome.failed
        finished = row.total_tasks_completed + row.total_tasks_failed
        if finished:
            row.success_rate = round(row.total_tasks_completed / finished * 100.0, 2)
        row.health_score = min(100.0, max(0.0, row.health_score + outcome.health_delta))
        if outcome.completion_seconds is not None:
            if row.average_completion_seconds is None:
                row.average_completion_seconds = outcome.completion_seconds
            else:
                row.average_completion_seconds = (
                    row.average_completion_seconds * (1 - _COMPLETION_SMOOTHING)
                    + outcome.completion_seconds * _COMPLETION_SMOOTHING
                )
        row.updated_at = to_db_datetime(now)
        session.add(row)

    def _add_event(self, session: Session, event: EventWrite) -> None:
        logger.log(
            _SEVERITY_LEVELS[event.severity],
            "%s: %s",
            event.event_type,
            event.message,
        )
        session.add(
            EventRow(
                event_type=event.event_type,
                severity=event.severity.value,
                agent_id=event.agent_id,
                task_id=event.task_id,
                collaboration_id=event.collaboration_id,
                message=event.message,
                data_json=dump_json(event.data) if event.data else None,
                occurred_at=to_db_datetime(self.now()),
            ),
        )

    def _agent_views(self, session: Session, rows: list[AgentRow]) -> list[AgentView]:
        if not rows:
            return []
        tags: dict[str, dict[str, list[str]]] = {row.agent_id: {} for row in rows}
        tag_rows = session.exec(
            select(AgentTagRow)
            .where(col(AgentTagRow.agent_id).in_(list(tags)))
            .order_by(col(AgentTagRow.id).asc()),
        ).all()
        for tag_row in tag_rows:
            tags[tag_row.agent_id].setdefault(tag_row.kind, []).append(tag_row.tag)
        return [_to_agent_view(row, tags[row.agent_id]) for row in rows]

    def _task_views(self, session: Session, rows: list[TaskRow]) -> list[TaskView]:
        if not rows:
            return []
        dependencies: dict[str, list[str]] = {row.task_id: [] for row in rows}
        dependency_rows = session.exec(
            select(TaskDependencyRow).where(
                col(TaskDependencyRow.task_id).in_(list(dependencies)),
            ),
        ).all()
        for dependency in dependency_rows:
            dependencies[dependency.task_id].append(dependency.depends_on_task_id)
        return [_to_task_view(row, dependencies[row.task_id]) for row in rows]


def _has_tag(kind: TagKind, tag: str):
    return (
        exists()
        .where(
            col(AgentTagRow.agent_id) == col(AgentRow.agent_id),
            col(AgentTagRow.kind) == kind.value,
            col(AgentTagRow.tag) == tag,
        )
        .correlate(AgentRow)
    )


def _ready_conditions(now_db: datetime) -> list[Any]:
    dependency = aliased(TaskRow)
    unmet = (
        exists()
        .where(
            col(TaskDependencyRow.task_id) == col(TaskRow.task_id),
            col(TaskDependencyRow.depends_on_task_id) == dependency.task_id,
            dependency.status != TaskStatus.COMPLETED.value,
        )
        .correlate(TaskRow)
    )
    return [
        col(TaskRow.status) == TaskStatus.PENDING.value,
        col(TaskRow.blocked_reason).is_(None),
        or_(col(TaskRow.run_after).is_(None), col(TaskRow.run_after) <= now_db),
        or_(col(TaskRow.deadline_at).is_(None), col(TaskRow.deadline_at) > now_db),
        ~unmet,
    ]


def _count(session: Session, *conditions: Any) -> int:
    return int(session.exec(select(func.count()).select_from(TaskRow).where(*conditions)).one())


def _to_agent_view(row: AgentRow, tags: dict[str, list[str]]) -> AgentView:
    return AgentView(
        agent_id=row.agent_id,
        name=row.name,
        agent_type=row.agent_type,
        status=AgentStatus(row.status),
        capabilities=tuple(tags.get(TagKind.CAPABILITY.value, [])),
        specializations=tuple(tags.get(TagKind.SPECIALIZATION.value, [])),
        health_score=row.health_score,
        current_task_count=row.current_task_count,
        max_concurrent_tasks=row.max_concurrent_tasks,
        stale=row.stale,
        total_tasks_completed=row.total_tasks_completed,
        total_tasks_failed=row.total_tasks_failed,
        success_rate=row.success_rate,
        average_completion_seconds=row.average_completion_seconds,
        configuration=load_json(row.configuration_json, {}),
        last_heartbeat_at=to_utc_aware_datetime(row.last_heartbeat_at),
        offline_at=optional_utc(row.offline_at),
        last_assigned_at=optional_utc(row.last_assigned_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: TaskRow, dependencies: list[str]) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        task_type=row.task_type,
        input=load_json(row.input_json),
        priority=row.priority,
        status=TaskStatus(row.status),
        verification_status=VerificationStatus(row.verification_status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        agent_id=row.agent_id,
        assignment_strategy=row.assignment_strategy,
        result=load_json(row.result_json),
        error_message=row.error_message,
        blocked_reason=row.blocked_reason,
        dependencies=tuple(sorted(dependencies)),
        metadata=load_json(row.metadata_json, {}),
        deadline_at=optional_utc(row.deadline_at),
        run_after=optional_utc(row.run_after),
        assigned_at=optional_utc(row.assigned_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_collaboration_view(row: CollaborationRow) -> CollaborationView:
    return CollaborationView(
        collaboration_id=row.collaboration_id,
        task_id=row.task_id,
        collaboration_type=CollaborationType(row.collaboration_type),
        status=CollaborationStatus(row.status),
        primary_agent_id=row.primary_agent_id,
        participating_agent_ids=tuple(load_json(row.participants_json, [])),
        results=load_json(row.results_json, {}),
        outcome=load_json(row.outcome_json, {}),
        settings=load_json(row.settings_json, {}),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: EventRow) -> EventView:
    data = load_json(row.data_json, {})
    return EventView(
        event_id=row.id or 0,
        event_type=row.event_type,
        severity=EventSeverity(row.severity),
        agent_id=row.agent_id,
        task_id=row.task_id,
        collaboration_id=row.collaboration_id,
        message=row.message,
        data=data if isinstance(data, dict) else {},
        occurred_at=to_utc_aware_datetime(row.occurred_at),
    )
