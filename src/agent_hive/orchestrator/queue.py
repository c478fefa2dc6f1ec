"""Task admission, prioritization, assignment and retry/dead-letter handling."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from agent_hive.config import QueueSettings
from agent_hive.orchestrator.dispatch import Dispatcher
from agent_hive.orchestrator.errors import NotFoundError, ValidationError
from agent_hive.orchestrator.models import (
    IN_FLIGHT_TASK_STATUSES,
    AgentOutcome,
    AgentView,
    AssignmentStrategy,
    AssignOutcome,
    EventSeverity,
    EventWrite,
    TaskCreate,
    TaskSelectionStrategy,
    TaskStatus,
    TaskView,
)
from agent_hive.orchestrator.registry import AgentRegistry
from agent_hive.orchestrator.repository import OrchestratorRepository
from agent_hive.orchestrator.selection import AGENT_SELECTORS
from agent_hive.storage.common import to_utc_aware_datetime

logger = logging.getLogger(__name__)

TIMEOUT_ERROR_MESSAGE = "Task execution timeout"
EXECUTION_FAILURE_HEALTH_DELTA = -10.0
DEAD_LETTER_BLOCK_REASON = "dependency_dead_lettered"


@dataclass(slots=True)
class Assignment:
    task: TaskView
    agent: AgentView
    strategy: AssignmentStrategy


@dataclass(slots=True)
class RetryDetail:
    task_id: str
    retried: bool
    retry_count: int
    reason: str | None = None


@dataclass(slots=True)
class RetrySummary:
    retried_count: int
    details: list[RetryDetail] = field(default_factory=list)


@dataclass(slots=True)
class TimeoutResult:
    task_id: str
    handled: bool
    retried: bool = False
    dead_lettered: bool = False


@dataclass(slots=True)
class QueueStatistics:
    """Counts by status plus readiness, verification and wait-time aggregates."""

    by_status: dict[str, int]
    blocked: int
    overdue: int
    ready: int
    needs_verification: int
    verification_failed: int
    by_priority: dict[int, int]
    average_wait_seconds: float

    @property
    def pending(self) -> int:
        return self.by_status.get(TaskStatus.PENDING.value, 0)

    @property
    def total(self) -> int:
        return sum(self.by_status.values())


class TaskQueueManager:
    """Admits tasks, selects ready work and binds it to agents."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        registry: AgentRegistry,
        settings: QueueSettings,
        dispatcher: Dispatcher,
        scheduler: Callable[[str], object] | None = None,
        random_source: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.settings = settings
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self._random = random_source or random.Random()  # noqa: S311

    def enqueue(  # noqa: PLR0913
        self,
        task_type: str,
        input: Any = None,  # noqa: A002
        *,
        priority: int | None = None,
        deadline: datetime | None = None,
        dependencies: Iterable[str] = (),
        metadata: Mapping[str, Any] | None = None,
        max_retries: int | None = None,
        blocked_reason: str | None = None,
        schedule: bool = True,
    ) -> TaskView:
        """Persist a pending task and dispatch an asynchronous scheduling unit."""

        task_type = (task_type or "").strip()
        if not task_type:
            raise ValidationError("Task type is required.")
        priority = self.settings.default_priority if priority is None else priority
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError(f"Priority must be an integer, got {priority!r}.")
        max_retries = self.settings.default_max_retries if max_retries is None else max_retries
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ValidationError(f"max_retries must be a non-negative integer, got {max_retries!r}.")
        dependency_ids = list(dependencies)
        if any(not isinstance(dep, str) or not dep.strip() for dep in dependency_ids):
            raise ValidationError("Dependency ids must be non-empty strings.")

        task = self.repository.create_task(
            TaskCreate(
                task_type=task_type,
                input=input,
                priority=priority,
                deadline_at=to_utc_aware_datetime(deadline) if deadline is not None else None,
                dependencies=tuple(dependency_ids),
                metadata=dict(metadata or {}),
                max_retries=max_retries,
                blocked_reason=blocked_reason,
            ),
        )
        if schedule and task.blocked_reason is None:
            self._schedule(task.task_id)
        return task

    def get_task(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def next_task(
        self,
        strategy: TaskSelectionStrategy = TaskSelectionStrategy.PRIORITY_FIRST,
        *,
        exclude_ids: Iterable[str] = (),
    ) -> TaskView | None:
        """Return the next ready task for the strategy, or None."""

        self.flag_dead_letter_dependents()
        tasks = self.repository.list_ready_tasks(order=strategy, limit=1, exclude_ids=exclude_ids)
        return tasks[0] if tasks else None

    def assign_task(
        self,
        task_id: str,
        strategy: AssignmentStrategy = AssignmentStrategy.LEAST_LOADED,
    ) -> Assignment | None:
        """Bind a ready task to an eligible agent.

        Returns None (logged at warning severity) when dependencies are unmet
        or no agent qualifies; both are normal, retryable outcomes.
        """

        task = self.get_task(task_id)
        if task.status != TaskStatus.PENDING or task.blocked_reason is not None:
            logger.debug("Task %s is %s, not assignable", task_id, task.status.value)
            return None

        unmet = self.repository.unmet_dependencies(task_id)
        if unmet:
            if task_id in self.flag_dead_letter_dependents():
                return None
            self.repository.add_event(
                EventWrite(
                    event_type="assignment_deferred",
                    message=f"Task {task_id} waits for {len(unmet)} dependencies",
                    severity=EventSeverity.WARNING,
                    task_id=task_id,
                    data={"reason": "dependencies_unmet", "dependencies": unmet},
                ),
            )
            self._schedule(task_id, delay_seconds=self.settings.dependency_recheck_seconds)
            return None

        for agent in self.rank_agents(task, strategy):
            outcome = self.repository.assign_task(
                task_id=task_id,
                agent_id=agent.agent_id,
                strategy=strategy.value,
            )
            if outcome == AssignOutcome.ASSIGNED:
                return Assignment(
                    task=self.get_task(task_id),
                    agent=self.registry.get(agent.agent_id),
                    strategy=strategy,
                )
            if outcome == AssignOutcome.TASK_UNAVAILABLE:
                return None

        self.repository.add_event(
            EventWrite(
                event_type="assignment_deferred",
                message=f"No eligible agent for task {task_id} ({task.task_type})",
                severity=EventSeverity.WARNING,
                task_id=task_id,
                data={"reason": "no_agent_available", "strategy": strategy.value},
            ),
        )
        return None

    def rank_agents(self, task: TaskView, strategy: AssignmentStrategy) -> list[AgentView]:
        floor = (
            self.registry.settings.high_performer_floor
            if strategy == AssignmentStrategy.HIGH_PERFORMER
            else None
        )
        agents = self.registry.eligible_agents(task.task_type, min_success_rate=floor)
        return AGENT_SELECTORS[strategy](agents, task)

    def schedule_retry(self, task: TaskView, *, reason: str) -> bool:
        """Move a failed task back to pending with exponential backoff and jitter."""

        if task.status != TaskStatus.FAILED or not task.retries_left:
            return False
        retry_number = task.retry_count + 1
        delay_seconds = self.compute_retry_delay(retry_number=retry_number)
        run_after = self.repository.now() + timedelta(seconds=delay_seconds)
        retried = self.repository.transition_task(
            task.task_id,
            expected=TaskStatus.FAILED,
            target=TaskStatus.PENDING,
            event_type="retry_scheduled",
            message=(
                f"Task {task.task_id} retry {retry_number}/{task.max_retries} "
                f"in {delay_seconds:.1f}s"
            ),
            values={"run_after": run_after},
            increment_retry=True,
            details={"reason": reason, "delay_seconds": round(delay_seconds, 3)},
        )
        if retried:
            self._schedule(task.task_id, delay_seconds=delay_seconds)
        return retried

    def compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.settings.retry_max_seconds,
            self.settings.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def dead_letter(self, task: TaskView, *, reason: str) -> bool:
        moved = self.repository.transition_task(
            task.task_id,
            expected=TaskStatus.FAILED,
            target=TaskStatus.DEAD_LETTER,
            event_type="task_dead_lettered",
            message=(
                f"Task {task.task_id} moved to dead letter after "
                f"{task.retry_count}/{task.max_retries} retries: {reason}"
            ),
            severity=EventSeverity.ERROR,
            details={"reason": reason, "error_message": task.error_message},
        )
        if moved:
            self.flag_dead_letter_dependents()
        return moved

    def retry_or_dead_letter(self, task_id: str, *, reason: str) -> str:
        """Retry a failed task if budget remains, otherwise dead-letter it."""

        task = self.get_task(task_id)
        if task.status != TaskStatus.FAILED:
            return "skipped"
        if task.retries_left:
            return "retried" if self.schedule_retry(task, reason=reason) else "skipped"
        return "dead_lettered" if self.dead_letter(task, reason=reason) else "skipped"

    def retry_failed_tasks(self) -> RetrySummary:
        """Requeue failed tasks below the retry ceiling; leave the rest untouched."""

        details: list[RetryDetail] = []
        for task in self.repository.list_failed_tasks():
            if not task.retries_left:
                details.append(
                    RetryDetail(
                        task_id=task.task_id,
                        retried=False,
                        retry_count=task.retry_count,
                        reason="max_retries_reached",
                    ),
                )
                continue
            retried = self.schedule_retry(task, reason="retry_failed_tasks")
            details.append(
                RetryDetail(
                    task_id=task.task_id,
                    retried=retried,
                    retry_count=task.retry_count + 1 if retried else task.retry_count,
                    reason=None if retried else "state_changed",
                ),
            )
        return RetrySummary(
            retried_count=sum(1 for detail in details if detail.retried),
            details=details,
        )

    def move_failed_to_dead_letter(self) -> list[str]:
        moved: list[str] = []
        for task in self.repository.list_failed_tasks(retryable=False):
            if self.dead_letter(task, reason="max_retries_reached"):
                moved.append(task.task_id)
        return moved

    def handle_timeout(self, task_id: str) -> TimeoutResult:
        """Fail a not-yet-completed task with a timeout reason; retry if budget remains."""

        task = self.get_task(task_id)
        if task.status not in {TaskStatus.PENDING, *IN_FLIGHT_TASK_STATUSES}:
            return TimeoutResult(task_id=task_id, handled=False)
        outcome = (
            AgentOutcome(failed=1, health_delta=EXECUTION_FAILURE_HEALTH_DELTA)
            if task.agent_id is not None
            else None
        )
        failed = self.repository.transition_task(
            task_id,
            expected=task.status,
            target=TaskStatus.FAILED,
            event_type="task_timed_out",
            message=f"Task {task_id} exceeded its deadline",
            severity=EventSeverity.ERROR,
            values={
                "error_message": TIMEOUT_ERROR_MESSAGE,
                "completed_at": self.repository.now(),
            },
            agent_outcome=outcome,
            details={
                "reason": "timeout",
                "deadline_at": task.deadline_at.isoformat() if task.deadline_at else None,
            },
            expected_agent_id=task.agent_id,
        )
        if not failed:
            return TimeoutResult(task_id=task_id, handled=False)
        if task.agent_id is not None:
            self.registry.enforce_health_floor(task.agent_id)
        result = self.retry_or_dead_letter(task_id, reason="timeout")
        return TimeoutResult(
            task_id=task_id,
            handled=True,
            retried=result == "retried",
            dead_lettered=result == "dead_lettered",
        )

    def check_deadlines(self) -> list[TimeoutResult]:
        return [self.handle_timeout(task.task_id) for task in self.repository.list_overdue_tasks()]

    def flag_dead_letter_dependents(self) -> list[str]:
        """Block pending tasks that depend, directly or through a chain, on a dead letter."""

        flagged: list[str] = []
        while True:
            candidates = self.repository.list_tasks_blocked_by_dead_letter(
                propagated_reason=DEAD_LETTER_BLOCK_REASON,
            )
            newly_flagged = [
                task_id
                for task_id, dependency_id in candidates
                if self.repository.block_task(
                    task_id,
                    reason=DEAD_LETTER_BLOCK_REASON,
                    details={"dependency_id": dependency_id},
                )
            ]
            if not newly_flagged:
                return flagged
            flagged.extend(newly_flagged)

    def queue_statistics(self) -> QueueStatistics:
        counts = self.repository.queue_counts()
        since = self.repository.now() - timedelta(hours=self.settings.wait_lookback_hours)
        waits = self.repository.wait_samples(since=since)
        average_wait = round(sum(waits) / len(waits), 2) if waits else 0.0
        return QueueStatistics(
            by_status=counts.by_status,
            blocked=counts.blocked,
            overdue=counts.overdue,
            ready=counts.ready,
            needs_verification=counts.needs_verification,
            verification_failed=counts.verification_failed,
            by_priority=counts.by_priority,
            average_wait_seconds=average_wait,
        )

    def list_dead_letter(self, *, limit: int | None = 50) -> list[TaskView]:
        return self.repository.list_tasks(status=TaskStatus.DEAD_LETTER, limit=limit)

    def resubmit(self, task_id: str) -> TaskView:
        """Enqueue a fresh copy of a dead-lettered task for manual remediation."""

        task = self.get_task(task_id)
        if task.status != TaskStatus.DEAD_LETTER:
            raise ValidationError(
                f"Only dead-letter tasks can be resubmitted, got {task.status.value}.",
            )
        metadata = {
            key: value
            for key, value in task.metadata.items()
            if key not in {"verification", "reassigned_from", "reassigned_at"}
        }
        metadata["resubmitted_from"] = task.task_id
        return self.enqueue(
            task.task_type,
            task.input,
            priority=task.priority,
            dependencies=task.dependencies,
            metadata=metadata,
            max_retries=task.max_retries,
        )

    def cleanup_old_tasks(self, *, retention_days: int | None = None) -> int:
        days = self.settings.cleanup_retention_days if retention_days is None else retention_days
        cutoff = self.repository.now() - timedelta(days=days)
        return self.repository.delete_finished_tasks(before=cutoff)

    def _schedule(self, task_id: str, *, delay_seconds: float = 0.0) -> None:
        if self.scheduler is None:
            return
        self.dispatcher.submit(self.scheduler, task_id, delay_seconds=delay_seconds)
