"""Top-level control loop: drains the queue, executes tasks, keeps the hive healthy."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar
from uuid import uuid4

from agent_hive.config import Settings
from agent_hive.orchestrator.backend import BackendRegistry, builtin_registry, default_capabilities_for
from agent_hive.orchestrator.consensus import ConsensusMechanism
from agent_hive.orchestrator.dispatch import Dispatcher
from agent_hive.orchestrator.errors import ExecutionFailure, InvalidStateError, ValidationError
from agent_hive.orchestrator.models import (
    AgentOutcome,
    AgentStatus,
    AgentView,
    AssignmentStrategy,
    EventSeverity,
    EventWrite,
    TaskSelectionStrategy,
    TaskStatus,
    VerificationStatus,
)
from agent_hive.orchestrator.queue import (
    EXECUTION_FAILURE_HEALTH_DELTA,
    QueueStatistics,
    RetrySummary,
    TaskQueueManager,
)
from agent_hive.orchestrator.registry import AgentRegistry, HeartbeatReport, RegistryHealth
from agent_hive.orchestrator.repository import OrchestratorRepository
from agent_hive.orchestrator.scoring import agent_load_score, has_error_marker
from agent_hive.orchestrator.verification import BatchVerification, VerificationLayer
from agent_hive.storage.common import dump_json

logger = logging.getLogger(__name__)

COMPLETION_HEALTH_DELTA = 5.0
_STATISTICS_WINDOW = timedelta(hours=24)

T = TypeVar("T")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass(slots=True)
class QueueRunItem:
    task_id: str
    assigned: bool
    agent_id: str | None = None


@dataclass(slots=True)
class QueueRunSummary:
    processed_count: int
    results: list[QueueRunItem] = field(default_factory=list)


@dataclass(slots=True)
class ExecutionResult:
    task_id: str
    agent_id: str
    success: bool
    output: Any = None
    error: str | None = None
    follow_up: str | None = None


@dataclass(slots=True)
class HealthReport:
    """Overall hive health derived from agents, queue and recent events."""

    status: HealthStatus
    score: float
    agent_health_percentage: float
    queue_health_percentage: float
    agents: RegistryHealth
    queue: QueueStatistics
    events: dict[str, int]
    recommendations: list[str]
    checked_at: datetime


@dataclass(slots=True)
class OptimizationReport:
    rebalanced: int = 0
    retry: RetrySummary | None = None
    heartbeat: HeartbeatReport | None = None
    verification: BatchVerification | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def actions(self) -> int:
        count = 1 if self.rebalanced else 0
        if self.retry is not None and self.retry.retried_count:
            count += 1
        if self.heartbeat is not None and self.heartbeat.stale_count:
            count += 1
        if self.verification is not None and self.verification.total:
            count += 1
        return count


@dataclass(slots=True)
class ScaleResult:
    agent_type: str
    previous_count: int
    target_count: int
    current_count: int
    registered_ids: list[str] = field(default_factory=list)
    offline_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class OrchestratorStatistics:
    since: datetime
    agents: dict[str, float]
    tasks: dict[str, float]
    collaborations: dict[str, int]
    events: dict[str, int]


@dataclass(slots=True)
class StartReport:
    started_at: datetime
    agents: RegistryHealth
    queue: QueueStatistics


class Orchestrator:
    """Wires registry, queue, verification and consensus into one engine."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        settings: Settings,
        dispatcher: Dispatcher,
        backends: BackendRegistry | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.dispatcher = dispatcher
        self.backends = backends or builtin_registry()
        self.default_assignment_strategy = AssignmentStrategy.LEAST_LOADED
        self.registry = AgentRegistry(repository, settings.registry)
        self.queue = TaskQueueManager(
            repository=repository,
            registry=self.registry,
            settings=settings.queue,
            dispatcher=dispatcher,
            scheduler=self.schedule_task,
        )
        self.verification = VerificationLayer(
            repository=repository,
            registry=self.registry,
            settings=settings.verification,
            dispatcher=dispatcher,
            backends=self.backends,
            failure_handler=self._after_verification_failure,
        )
        self.consensus = ConsensusMechanism(
            repository=repository,
            registry=self.registry,
            settings=settings.consensus,
            registry_settings=settings.registry,
            backends=self.backends,
        )

    def start(self) -> StartReport:
        """Record startup and return an initial snapshot of agents and queue."""

        self.repository.add_event(
            EventWrite(
                event_type="orchestrator_started",
                message="Orchestrator started",
                data={"db_path": str(self.repository.db_path)},
            ),
        )
        return StartReport(
            started_at=self.repository.now(),
            agents=self.registry.system_health(),
            queue=self.queue.queue_statistics(),
        )

    def schedule_task(self, task_id: str) -> bool:
        """Asynchronous scheduling unit: assign the task and dispatch its execution."""

        assignment = self.queue.assign_task(task_id, self.default_assignment_strategy)
        if assignment is None:
            return False
        self.dispatcher.submit(self.execute_task, task_id)
        return True

    def process_queue(
        self,
        task_strategy: TaskSelectionStrategy = TaskSelectionStrategy.PRIORITY_FIRST,
        agent_strategy: AssignmentStrategy = AssignmentStrategy.LEAST_LOADED,
        batch_size: int | None = None,
    ) -> QueueRunSummary:
        """Assign up to ``batch_size`` ready tasks, dispatching each execution."""

        limit = self.settings.supervisor.batch_size if batch_size is None else batch_size
        tried: list[str] = []
        results: list[QueueRunItem] = []
        for _ in range(max(limit, 0)):
            task = self.queue.next_task(task_strategy, exclude_ids=tried)
            if task is None:
                break
            tried.append(task.task_id)
            assignment = self.queue.assign_task(task.task_id, agent_strategy)
            if assignment is None:
                results.append(QueueRunItem(task_id=task.task_id, assigned=False))
                continue
            self.dispatcher.submit(self.execute_task, task.task_id)
            results.append(
                QueueRunItem(
                    task_id=task.task_id,
                    assigned=True,
                    agent_id=assignment.agent.agent_id,
                ),
            )
        processed = sum(1 for item in results if item.assigned)
        if results:
            logger.info("Queue pass assigned %d of %d task(s)", processed, len(results))
        return QueueRunSummary(processed_count=processed, results=results)

    def execute_task(self, task_id: str) -> ExecutionResult | None:
        """Execution unit for an assigned task; a no-op in any other status."""

        task = self.queue.get_task(task_id)
        if task.status != TaskStatus.ASSIGNED or task.agent_id is None:
            logger.debug("Task %s is %s, skipping execution", task_id, task.status.value)
            return None
        agent = self.registry.get(task.agent_id)
        started = self.repository.transition_task(
            task_id,
            expected=TaskStatus.ASSIGNED,
            target=TaskStatus.PROCESSING,
            event_type="task_started",
            message=f"Agent {agent.name} started task {task_id}",
            values={"started_at": self.repository.now()},
            expected_agent_id=agent.agent_id,
        )
        if not started:
            return None

        self.repository.mark_agent_busy(agent.agent_id)
        try:
            task = self.queue.get_task(task_id)
            try:
                output = self.backends.for_agent(agent).execute(task, agent)
                if has_error_marker(output):
                    raise ExecutionFailure(str(output["error"]))
            except Exception as error:  # noqa: BLE001
                follow_up = self._record_failure(task_id, agent, error)
                return ExecutionResult(
                    task_id=task_id,
                    agent_id=agent.agent_id,
                    success=False,
                    error=str(error),
                    follow_up=follow_up,
                )
            return self._record_success(task_id, agent, output)
        finally:
            self.repository.refresh_agent_status(agent.agent_id)

    def verify_completed_task(self, task_id: str) -> None:
        """Verification unit dispatched after completion."""

        try:
            self.verification.verify_task(task_id)
        except InvalidStateError as error:
            logger.debug("Verification of task %s skipped: %s", task_id, error)

    def health_check(self) -> HealthReport:
        health = self.settings.health
        agents = self.registry.system_health()
        queue = self.queue.queue_statistics()
        events = self.repository.count_events_by_severity(
            since=self.repository.now() - timedelta(minutes=health.event_window_minutes),
        )
        pending = queue.pending
        if pending < health.backlog_threshold:
            queue_percentage = 100.0
        else:
            queue_percentage = health.backlog_threshold / pending * 100.0
        penalty = health.error_penalty * (
            events.get(EventSeverity.ERROR.value, 0) + events.get(EventSeverity.CRITICAL.value, 0)
        )
        score = round(
            max(0.5 * agents.health_percentage + 0.5 * queue_percentage - penalty, 0.0),
            2,
        )
        if score >= health.healthy_threshold:
            status = HealthStatus.HEALTHY
        elif score >= health.degraded_threshold:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.CRITICAL

        recommendations: list[str] = []
        if agents.total == 0:
            recommendations.append("Register agents - the pool is empty")
        if pending > health.backlog_threshold:
            recommendations.append(f"Scale up agents - {pending} tasks pending")
        if events.get(EventSeverity.CRITICAL.value, 0):
            recommendations.append("Investigate critical errors")
        if agents.count(AgentStatus.OFFLINE):
            recommendations.append("Some agents are offline - check heartbeats")
        if agents.count(AgentStatus.FAILED):
            recommendations.append("Some agents have failed - inspect their recent events")
        dead_letter = queue.by_status.get(TaskStatus.DEAD_LETTER.value, 0)
        if dead_letter:
            recommendations.append(f"Review {dead_letter} dead-letter task(s)")
        if queue.blocked:
            recommendations.append(f"{queue.blocked} task(s) blocked - check their dependencies")

        return HealthReport(
            status=status,
            score=score,
            agent_health_percentage=agents.health_percentage,
            queue_health_percentage=round(queue_percentage, 2),
            agents=agents,
            queue=queue,
            events=events,
            recommendations=recommendations,
            checked_at=self.repository.now(),
        )

    def optimize(self) -> OptimizationReport:
        """Best-effort maintenance sweep; a failing step does not stop the others."""

        report = OptimizationReport()
        rebalanced = self._isolated("rebalance", self.rebalance_workload, report.errors)
        report.rebalanced = rebalanced or 0
        report.retry = self._isolated("retry_failed", self.queue.retry_failed_tasks, report.errors)
        report.heartbeat = self._isolated(
            "heartbeats",
            self.registry.monitor_heartbeats,
            report.errors,
        )
        report.verification = self._isolated(
            "verify_pending",
            self.verification.verify_pending_tasks,
            report.errors,
        )
        self.repository.add_event(
            EventWrite(
                event_type="system_optimized",
                message=f"System optimization completed with {report.actions} action(s)",
                severity=EventSeverity.WARNING if report.errors else EventSeverity.INFO,
                data={"rebalanced": report.rebalanced, "errors": report.errors},
            ),
        )
        return report

    def rebalance_workload(self) -> int:
        """Move not-yet-started tasks off overloaded agents to the least-loaded peer."""

        threshold = self.settings.registry.overload_threshold
        moved = 0
        for entry in self.registry.load_distribution():
            if entry.load_score <= threshold:
                break
            overloaded = entry.agent
            for task in self.repository.list_tasks(
                status=TaskStatus.ASSIGNED,
                agent_id=overloaded.agent_id,
                limit=None,
            ):
                target = self._least_loaded_peer(overloaded)
                if target is None:
                    break
                if self.repository.reassign_task(
                    task_id=task.task_id,
                    from_agent_id=overloaded.agent_id,
                    to_agent_id=target.agent_id,
                ):
                    moved += 1
            self.repository.refresh_agent_status(overloaded.agent_id)
        if moved:
            logger.info("Rebalanced %d task(s) across agents", moved)
        return moved

    def scale_agents(self, agent_type: str, target_count: int) -> ScaleResult:
        """Register or take offline agents of a type until ``target_count`` are active."""

        agent_type = (agent_type or "").strip()
        if not agent_type:
            raise ValidationError("Agent type is required.")
        if isinstance(target_count, bool) or not isinstance(target_count, int) or target_count < 0:
            raise ValidationError(f"Target count must be >= 0, got {target_count!r}.")

        active = self.repository.find_agents(agent_type=agent_type)
        result = ScaleResult(
            agent_type=agent_type,
            previous_count=len(active),
            target_count=target_count,
            current_count=len(active),
        )
        if len(active) < target_count:
            for _ in range(target_count - len(active)):
                agent = self.registry.register(
                    agent_type,
                    f"{agent_type}-{uuid4().hex[:8]}",
                    default_capabilities_for(agent_type),
                )
                result.registered_ids.append(agent.agent_id)
            event_type = "agents_scaled_up"
        elif len(active) > target_count:
            excess = sorted(
                active,
                key=lambda agent: (agent.current_task_count, agent_load_score(agent), agent.name),
            )[: len(active) - target_count]
            for agent in excess:
                if self.registry.mark_offline(agent.agent_id, reason="scaled_down").applied:
                    result.offline_ids.append(agent.agent_id)
            event_type = "agents_scaled_down"
        else:
            return result

        result.current_count = len(self.repository.find_agents(agent_type=agent_type))
        self.repository.add_event(
            EventWrite(
                event_type=event_type,
                message=(
                    f"Scaled {agent_type} agents from {result.previous_count} "
                    f"to {result.current_count}"
                ),
                data={
                    "agent_type": agent_type,
                    "target_count": target_count,
                    "registered": result.registered_ids,
                    "offline": result.offline_ids,
                },
            ),
        )
        return result

    def statistics(self, since: datetime | None = None) -> OrchestratorStatistics:
        since = since or self.repository.now() - _STATISTICS_WINDOW
        counts = self.repository.count_agents_by_status()
        totals = self.repository.agent_totals()
        processing = self.repository.processing_samples(since=since)
        collaborations = self.repository.count_collaborations_since(since=since)
        events = self.repository.count_events_by_severity(since=since)
        return OrchestratorStatistics(
            since=since,
            agents={
                "total": float(sum(counts.values())),
                "active": float(
                    counts.get(AgentStatus.IDLE.value, 0) + counts.get(AgentStatus.BUSY.value, 0),
                ),
                **totals,
            },
            tasks={
                "created": float(self.repository.count_tasks_since(since=since)),
                "completed": float(
                    self.repository.count_tasks_since(since=since, status=TaskStatus.COMPLETED),
                ),
                "failed": float(
                    self.repository.count_tasks_since(since=since, status=TaskStatus.FAILED),
                ),
                "dead_letter": float(
                    self.repository.count_tasks_since(since=since, status=TaskStatus.DEAD_LETTER),
                ),
                "average_processing_seconds": (
                    round(sum(processing) / len(processing), 2) if processing else 0.0
                ),
            },
            collaborations={"total": sum(collaborations.values()), **collaborations},
            events={"total": sum(events.values()), **events},
        )

    def _record_success(self, task_id: str, agent: AgentView, output: Any) -> ExecutionResult:
        now = self.repository.now()
        task = self.queue.get_task(task_id)
        completion_seconds = (
            (now - task.started_at).total_seconds() if task.started_at is not None else None
        )
        completed = self.repository.transition_task(
            task_id,
            expected=TaskStatus.PROCESSING,
            target=TaskStatus.COMPLETED,
            event_type="task_completed",
            message=f"Task {task_id} completed by agent {agent.name}",
            values={
                "result_json": dump_json(output),
                "error_message": None,
                "completed_at": now,
                "verification_status": VerificationStatus.PENDING.value,
            },
            agent_outcome=AgentOutcome(
                health_delta=COMPLETION_HEALTH_DELTA,
                completion_seconds=completion_seconds,
            ),
            expected_agent_id=agent.agent_id,
        )
        if not completed:
            logger.warning(
                "Task %s no longer runs on agent %s, result discarded",
                task_id,
                agent.agent_id,
            )
            return ExecutionResult(
                task_id=task_id,
                agent_id=agent.agent_id,
                success=False,
                output=output,
                error="result_discarded",
            )
        self.dispatcher.submit(self.verify_completed_task, task_id)
        return ExecutionResult(
            task_id=task_id,
            agent_id=agent.agent_id,
            success=True,
            output=output,
            follow_up="verification_requested",
        )

    def _record_failure(self, task_id: str, agent: AgentView, error: Exception) -> str:
        failed = self.repository.transition_task(
            task_id,
            expected=TaskStatus.PROCESSING,
            target=TaskStatus.FAILED,
            event_type="task_execution_failed",
            message=f"Task {task_id} failed on agent {agent.name}: {error}",
            severity=EventSeverity.ERROR,
            values={"error_message": str(error), "completed_at": self.repository.now()},
            agent_outcome=AgentOutcome(failed=1, health_delta=EXECUTION_FAILURE_HEALTH_DELTA),
            details={"error_type": type(error).__name__},
            expected_agent_id=agent.agent_id,
        )
        if not failed:
            return "skipped"
        self.registry.enforce_health_floor(agent.agent_id)
        return self.queue.retry_or_dead_letter(task_id, reason="execution_failure")

    def _after_verification_failure(self, task_id: str, reason: str) -> None:
        self.queue.retry_or_dead_letter(task_id, reason=reason)

    def _least_loaded_peer(self, agent: AgentView) -> AgentView | None:
        peers = self.repository.find_agents(
            agent_type=agent.agent_type,
            exclude_ids=[agent.agent_id],
            with_capacity=True,
        )
        if not peers:
            return None
        return min(peers, key=lambda peer: (agent_load_score(peer), peer.name))

    @staticmethod
    def _isolated(name: str, step: Callable[[], T], errors: dict[str, str]) -> T | None:
        try:
            return step()
        except Exception as error:  # noqa: BLE001
            logger.exception("Optimization step %s failed", name)
            errors[name] = str(error)
            return None
