"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from agent_hive.config import Settings
from agent_hive.orchestrator.backend import default_capabilities_for
from agent_hive.orchestrator.dispatch import DeferredDispatcher, Dispatcher, ThreadPoolDispatcher
from agent_hive.orchestrator.engine import Orchestrator
from agent_hive.orchestrator.errors import NotFoundError, ValidationError
from agent_hive.orchestrator.metrics import (
    render_health_lines,
    render_queue_lines,
    render_statistics_lines,
)
from agent_hive.orchestrator.models import (
    AgentStatus,
    AgentView,
    AssignmentStrategy,
    TaskSelectionStrategy,
    TaskStatus,
    TaskView,
)
from agent_hive.orchestrator.repository import OrchestratorRepository
from agent_hive.orchestrator.supervisor import Supervisor


@dataclass(slots=True)
class AgentRegisterCommand:
    """CLI input for agent registration."""

    db_path: Path | None
    agent_type: str
    name: str
    capabilities: tuple[str, ...]
    specializations: tuple[str, ...]
    max_concurrent_tasks: int | None


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None
    status: str | None
    agent_type: str | None
    limit: int


@dataclass(slots=True)
class AgentMutateCommand:
    """CLI input for single-agent operations (show, heartbeat, offline, deregister)."""

    db_path: Path | None
    agent_id: str


@dataclass(slots=True)
class AgentScaleCommand:
    db_path: Path | None
    agent_type: str
    target_count: int


@dataclass(slots=True)
class TaskEnqueueCommand:
    """CLI input for task enqueue."""

    db_path: Path | None
    task_type: str
    input_json: str | None
    priority: int | None
    deadline_minutes: int | None
    dependencies: tuple[str, ...]
    max_retries: int | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    task_type: str | None
    limit: int


@dataclass(slots=True)
class TaskMutateCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class RunOnceCommand:
    """CLI input for one synchronous queue pass."""

    db_path: Path | None
    batch_size: int | None
    task_strategy: str
    agent_strategy: str


@dataclass(slots=True)
class RunDaemonCommand:
    db_path: Path | None


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None
    hours: int


@dataclass(slots=True)
class HealthCommand:
    db_path: Path | None


@dataclass(slots=True)
class ConsensusCreateCommand:
    db_path: Path | None
    task_type: str
    input_json: str | None
    required_agents: int | None
    threshold: float | None


@dataclass(slots=True)
class ConsensusExecuteCommand:
    db_path: Path | None
    collaboration_id: str


class AgentHiveCliController:
    """Coordinates agent, task, run and reporting CLI operations."""

    def register_agent(self, command: AgentRegisterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        config: dict[str, Any] = {}
        if command.max_concurrent_tasks is not None:
            config["max_concurrent_tasks"] = command.max_concurrent_tasks
        with _orchestrator(settings) as orchestrator:
            agent = orchestrator.registry.register(
                command.agent_type,
                command.name,
                command.capabilities or default_capabilities_for(command.agent_type),
                command.specializations,
                config,
            )
        return [
            f"Agent registered: agent_id={agent.agent_id} name={agent.name} "
            f"type={agent.agent_type} status={agent.status.value}",
        ]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_enum(AgentStatus, command.status, label="agent status")
        with _repository(settings) as repository:
            agents = repository.list_agents(
                status=status_filter,
                agent_type=command.agent_type,
                limit=command.limit,
            )
        lines = [f"Agents: {len(agents)}"]
        lines.extend(f"  {_agent_summary(agent)}" for agent in agents)
        return lines

    def show_agent(self, command: AgentMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            details = orchestrator.repository.get_agent_details(command.agent_id)
            if details is None:
                return [f"Agent not found: {command.agent_id}"]
            performance = orchestrator.registry.agent_performance(command.agent_id)

        agent = details.agent
        average = (
            f"{agent.average_completion_seconds:.2f}s"
            if agent.average_completion_seconds is not None
            else "-"
        )
        lines = [
            f"Agent: {agent.agent_id}",
            f"Name: {agent.name}",
            f"Type: {agent.agent_type}",
            f"Status: {agent.status.value}{' (stale)' if agent.stale else ''}",
            f"Capabilities: {', '.join(agent.capabilities) or '-'}",
            f"Specializations: {', '.join(agent.specializations) or '-'}",
            f"Load: {agent.current_task_count}/{agent.max_concurrent_tasks} "
            f"score={performance.load_score:.2f}",
            f"Health: {agent.health_score:.2f}",
            f"Success rate: {agent.success_rate:.2f}% "
            f"completed={agent.total_tasks_completed} failed={agent.total_tasks_failed}",
            f"Average completion: {average}",
            f"Last heartbeat: {agent.last_heartbeat_at.isoformat()}",
            f"In-flight tasks: {', '.join(details.in_flight_task_ids) or '-'}",
            f"Events: {len(details.events)}",
        ]
        lines.extend(
            f"  {event.occurred_at.isoformat()} {event.severity.value} {event.event_type}: "
            f"{event.message}"
            for event in details.events
        )
        return lines

    def heartbeat(self, command: AgentMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            try:
                outcome = orchestrator.registry.heartbeat(command.agent_id)
            except NotFoundError as error:
                return [str(error)]
        return [f"Heartbeat {outcome.value}: {command.agent_id}"]

    def mark_offline(self, command: AgentMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            if orchestrator.repository.get_agent(command.agent_id) is None:
                return [f"Agent not found: {command.agent_id}"]
            result = orchestrator.registry.mark_offline(command.agent_id)
        if not result.applied:
            return [f"Agent already inactive: {command.agent_id}"]
        return [
            f"Agent offline: {command.agent_id} requeued={len(result.requeued_task_ids)}",
            *(f"  requeued {task_id}" for task_id in result.requeued_task_ids),
        ]

    def deregister(self, command: AgentMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            try:
                result = orchestrator.registry.deregister(command.agent_id)
            except NotFoundError as error:
                return [str(error)]
        return [f"Agent deregistered: {command.agent_id} requeued={len(result.requeued_task_ids)}"]

    def scale(self, command: AgentScaleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            result = orchestrator.scale_agents(command.agent_type, command.target_count)
        return [
            f"Scaled {result.agent_type}: previous={result.previous_count} "
            f"target={result.target_count} current={result.current_count} "
            f"registered={len(result.registered_ids)} offline={len(result.offline_ids)}",
        ]

    def enqueue(self, command: TaskEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_json(command.input_json)
        with _orchestrator(settings) as orchestrator:
            deadline = (
                orchestrator.repository.now() + timedelta(minutes=command.deadline_minutes)
                if command.deadline_minutes is not None
                else None
            )
            task = orchestrator.queue.enqueue(
                command.task_type,
                payload,
                priority=command.priority,
                deadline=deadline,
                dependencies=command.dependencies,
                max_retries=command.max_retries,
                schedule=False,
            )
        return [
            f"Task enqueued: task_id={task.task_id} type={task.task_type} "
            f"status={task.status.value} priority={task.priority}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_enum(TaskStatus, command.status, label="task status")
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                task_type=command.task_type,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_summary(task)}" for task in tasks)
        return lines

    def show_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        verification = task.metadata.get("verification") or {}
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Verification: {task.verification_status.value}"
            + (
                f" score={verification['quality_score']}"
                if verification.get("quality_score") is not None
                else ""
            ),
            f"Priority: {task.priority}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Agent: {task.agent_id or '-'}",
            f"Dependencies: {', '.join(task.dependencies) or '-'}",
            f"Blocked: {task.blocked_reason or '-'}",
            f"Deadline: {task.deadline_at.isoformat() if task.deadline_at else '-'}",
            f"Error: {task.error_message or '-'}",
            f"Result: {json.dumps(task.result, sort_keys=True, default=str)}",
            f"Collaborations: {len(details.collaborations)}",
        ]
        lines.extend(
            f"  {collaboration.collaboration_id} type={collaboration.collaboration_type.value} "
            f"status={collaboration.status.value} "
            f"participants={len(collaboration.participating_agent_ids)}"
            for collaboration in details.collaborations
        )
        lines.append(f"Events: {len(details.events)}")
        lines.extend(
            f"  {event.occurred_at.isoformat()} {event.severity.value} {event.event_type}: "
            f"{event.message}"
            for event in details.events
        )
        return lines

    def dead_letter(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            tasks = orchestrator.queue.list_dead_letter(limit=command.limit)
        lines = [f"Dead-letter tasks: {len(tasks)}"]
        lines.extend(
            f"  {task.task_id} type={task.task_type} retries={task.retry_count}/"
            f"{task.max_retries} error={task.error_message or '-'}"
            for task in tasks
        )
        return lines

    def resubmit(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            try:
                task = orchestrator.queue.resubmit(command.task_id)
            except NotFoundError as error:
                return [str(error)]
        return [f"Task resubmitted: {command.task_id} -> {task.task_id}"]

    def run_once(self, command: RunOnceCommand) -> list[str]:
        """Drain the queue synchronously: assign, execute, verify."""

        settings = Settings.from_env(db_path=command.db_path)
        task_strategy = _parse_enum(
            TaskSelectionStrategy,
            command.task_strategy,
            label="task strategy",
        )
        agent_strategy = _parse_enum(
            AssignmentStrategy,
            command.agent_strategy,
            label="agent strategy",
        )
        dispatcher = DeferredDispatcher()
        with _orchestrator(settings, dispatcher=dispatcher) as orchestrator:
            orchestrator.registry.monitor_heartbeats()
            summary = orchestrator.process_queue(
                task_strategy or TaskSelectionStrategy.PRIORITY_FIRST,
                agent_strategy or AssignmentStrategy.LEAST_LOADED,
                command.batch_size,
            )
            units = dispatcher.drain()
            queue_stats = orchestrator.queue.queue_statistics()

        lines = [
            f"Queue pass: assigned={summary.processed_count} considered={len(summary.results)} "
            f"units_run={units} deferred={len(dispatcher.delayed)}",
        ]
        lines.extend(
            f"  {item.task_id} -> {item.agent_id}" if item.assigned else f"  {item.task_id} waiting"
            for item in summary.results
        )
        lines.extend(render_queue_lines(stats=queue_stats))
        return lines

    def run_daemon(self, command: RunDaemonCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        dispatcher = ThreadPoolDispatcher(max_workers=settings.supervisor.dispatcher_workers)
        with _orchestrator(settings, dispatcher=dispatcher) as orchestrator:
            supervisor = Supervisor(orchestrator, settings.supervisor)
            supervisor.run_forever()
        return ["Supervisor stopped."]

    def verify_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        dispatcher = DeferredDispatcher()
        with _orchestrator(settings, dispatcher=dispatcher) as orchestrator:
            try:
                result = orchestrator.verification.verify_task(command.task_id)
            except NotFoundError as error:
                return [str(error)]
            dispatcher.drain()
        lines = [
            f"Verification: task_id={result.task_id} passed={result.passed} "
            f"score={result.quality_score:.2f} reason={result.reason or '-'}",
        ]
        if result.escalated:
            lines.append(f"Escalated to peer review: {result.collaboration_id}")
        lines.extend(
            f"  {name}={'ok' if passed else 'fail'}" for name, passed in result.checks.items()
        )
        return lines

    def verify_pending(self, command: HealthCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        dispatcher = DeferredDispatcher()
        with _orchestrator(settings, dispatcher=dispatcher) as orchestrator:
            batch = orchestrator.verification.verify_pending_tasks()
            dispatcher.drain()
        return [
            f"Verified: total={batch.total} passed={batch.passed} failed={batch.failed} "
            f"escalated={batch.escalated}",
        ]

    def create_consensus(self, command: ConsensusCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_json(command.input_json)
        with _orchestrator(settings) as orchestrator:
            created = orchestrator.consensus.create_consensus_task(
                command.task_type,
                payload,
                required_agents=command.required_agents,
                threshold=command.threshold,
            )
        return [
            f"Consensus task created: task_id={created.task.task_id} "
            f"collaboration_id={created.collaboration.collaboration_id}",
        ]

    def execute_consensus(self, command: ConsensusExecuteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            try:
                outcome = orchestrator.consensus.execute_consensus_task(command.collaboration_id)
            except NotFoundError as error:
                return [str(error)]
        if not outcome.success:
            return [f"Consensus failed: {outcome.error}"]
        return [
            f"Consensus reached={outcome.consensus_reached} "
            f"agreement={outcome.agreement_count}/{outcome.successful_agents} "
            f"({outcome.agreement_percentage:.2f}%) agents={outcome.total_agents}",
            f"Result: {json.dumps(outcome.consensus_result, sort_keys=True, default=str)}",
        ]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        hours = max(1, command.hours)
        with _orchestrator(settings) as orchestrator:
            stats = orchestrator.statistics(
                since=orchestrator.repository.now() - timedelta(hours=hours),
            )
            queue_stats = orchestrator.queue.queue_statistics()
        return [
            *render_statistics_lines(stats=stats, hours=hours),
            *render_queue_lines(stats=queue_stats),
        ]

    def health(self, command: HealthCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            report = orchestrator.health_check()
        return render_health_lines(report=report)


def _agent_summary(agent: AgentView) -> str:
    return (
        f"{agent.agent_id} name={agent.name} type={agent.agent_type} "
        f"status={agent.status.value} tasks={agent.current_task_count}/"
        f"{agent.max_concurrent_tasks} health={agent.health_score:.2f} "
        f"success_rate={agent.success_rate:.2f}"
    )


def _task_summary(task: TaskView) -> str:
    return (
        f"{task.task_id} type={task.task_type} status={task.status.value} "
        f"priority={task.priority} retries={task.retry_count}/{task.max_retries} "
        f"verification={task.verification_status.value} agent={task.agent_id or '-'}"
    )


def _parse_enum(enum_type: Any, value: str | None, *, label: str) -> Any:
    if value is None:
        return None
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        raise ValidationError(f"Unsupported {label}: {value!r}") from error


def _parse_json(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValidationError(f"Input is not valid JSON: {error}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _orchestrator(
    settings: Settings,
    *,
    dispatcher: Dispatcher | None = None,
) -> Iterator[Orchestrator]:
    settings.validate()
    with _repository(settings) as repository:
        orchestrator = Orchestrator(
            repository=repository,
            settings=settings,
            dispatcher=dispatcher or DeferredDispatcher(),
        )
        try:
            yield orchestrator
        finally:
            orchestrator.dispatcher.shutdown(wait=True)
