from __future__ import annotations

from collections.abc import Callable
from typing import Any

import allure
import pytest

from agent_hive.config import Settings
from agent_hive.orchestrator.backend import BackendRegistry
from agent_hive.orchestrator.dispatch import DeferredDispatcher
from agent_hive.orchestrator.engine import HealthStatus, Orchestrator
from agent_hive.orchestrator.errors import ValidationError
from agent_hive.orchestrator.models import (
    AgentOutcome,
    AgentStatus,
    AgentView,
    AssignmentStrategy,
    AssignOutcome,
    TaskStatus,
    TaskView,
    VerificationStatus,
)
from agent_hive.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("Orchestrator"),
]


class FailingBackend:
    def execute(self, task: TaskView, agent: AgentView) -> Any:
        raise RuntimeError("agent crashed")


class EmptyBackend:
    def execute(self, task: TaskView, agent: AgentView) -> Any:
        return ""


class HandoverBackend:
    """Loses its agent mid-run, so the task moves to a peer before the call returns."""

    def __init__(self, *, fail: bool) -> None:
        self.fail = fail
        self.handover: Callable[[TaskView], None] | None = None

    def execute(self, task: TaskView, agent: AgentView) -> Any:
        assert self.handover is not None
        self.handover(task)
        if self.fail:
            raise RuntimeError(f"late failure from {agent.name}")
        return {"result": f"late output from {agent.name}"}


def _engine(
    repository: OrchestratorRepository,
    settings: Settings,
    dispatcher: DeferredDispatcher,
    backend: Any,
) -> Orchestrator:
    return Orchestrator(
        repository=repository,
        settings=settings,
        dispatcher=dispatcher,
        backends=BackendRegistry(default=backend),
    )


def test_process_queue_respects_agent_capacity(
    orchestrator: Orchestrator,
    dispatcher: DeferredDispatcher,
) -> None:
    for index in range(3):
        orchestrator.registry.register(
            "analyzer",
            f"analyzer-{index}",
            ["statistical_analysis"],
            config={"max_concurrent_tasks": 1},
        )
    task_ids = [
        orchestrator.queue.enqueue("analyzer", {"values": [index]}, schedule=False).task_id
        for index in range(4)
    ]

    summary = orchestrator.process_queue(agent_strategy=AssignmentStrategy.LEAST_LOADED, batch_size=4)

    statuses = [orchestrator.queue.get_task(task_id).status for task_id in task_ids]
    assert summary.processed_count == 3
    assert len(summary.results) == 4
    assert statuses.count(TaskStatus.ASSIGNED) == 3
    assert statuses.count(TaskStatus.PENDING) == 1
    assert len({item.agent_id for item in summary.results if item.assigned}) == 3
    assert dispatcher.pending == 3


def test_stale_agent_processing_task_returns_to_pending(
    orchestrator: Orchestrator,
    repository: OrchestratorRepository,
    clock,
) -> None:
    agent = orchestrator.registry.register("analyzer", "stale", ["statistical_analysis"])
    task = orchestrator.queue.enqueue("analyzer", {"values": [1]}, schedule=False)
    orchestrator.process_queue(batch_size=1)
    repository.transition_task(
        task.task_id,
        expected=TaskStatus.ASSIGNED,
        target=TaskStatus.PROCESSING,
        event_type="task_started",
        message="started",
    )
    clock.advance(seconds=601)

    report = orchestrator.registry.monitor_heartbeats()

    requeued = orchestrator.queue.get_task(task.task_id)
    assert report.newly_offline_ids == [agent.agent_id]
    assert orchestrator.registry.get(agent.agent_id).status == AgentStatus.OFFLINE
    assert requeued.status == TaskStatus.PENDING
    assert requeued.agent_id is None
    assert requeued.metadata["reassigned_from"] == agent.agent_id


@pytest.mark.parametrize("fail", [False, True])
def test_late_outcome_from_replaced_agent_is_discarded(
    repository: OrchestratorRepository,
    settings: Settings,
    dispatcher: DeferredDispatcher,
    fail: bool,
) -> None:
    backend = HandoverBackend(fail=fail)
    engine = _engine(repository, settings, dispatcher, backend)
    first = engine.registry.register("analyzer", "first", ["statistical_analysis"])
    task = engine.queue.enqueue("analyzer", {"values": [1]}, schedule=False)
    engine.process_queue(batch_size=1)
    second = engine.registry.register("analyzer", "second", ["statistical_analysis"])

    def hand_over(running: TaskView) -> None:
        engine.registry.mark_offline(first.agent_id)
        outcome = repository.assign_task(
            task_id=running.task_id,
            agent_id=second.agent_id,
            strategy="manual",
        )
        assert outcome == AssignOutcome.ASSIGNED
        assert repository.transition_task(
            running.task_id,
            expected=TaskStatus.ASSIGNED,
            target=TaskStatus.PROCESSING,
            event_type="task_started",
            message="started",
            expected_agent_id=second.agent_id,
        )

    backend.handover = hand_over

    result = engine.execute_task(task.task_id)

    assert result is not None
    assert result.success is False
    still_running = engine.queue.get_task(task.task_id)
    assert still_running.status == TaskStatus.PROCESSING
    assert still_running.agent_id == second.agent_id
    assert still_running.result is None
    assert still_running.retry_count == 0
    replacement = engine.registry.get(second.agent_id)
    assert replacement.current_task_count == 1
    assert replacement.total_tasks_completed == 0
    assert replacement.total_tasks_failed == 0
    assert replacement.health_score == 100.0
    replaced = engine.registry.get(first.agent_id)
    assert replaced.status == AgentStatus.OFFLINE
    assert replaced.total_tasks_failed == 0
    assert replaced.current_task_count == 0


def test_task_failing_three_times_ends_in_dead_letter(
    repository: OrchestratorRepository,
    settings: Settings,
    dispatcher: DeferredDispatcher,
    clock,
) -> None:
    engine = _engine(repository, settings, dispatcher, FailingBackend())
    agent = engine.registry.register("analyzer", "flaky", ["statistical_analysis"])
    task = engine.queue.enqueue("analyzer", {"values": [1]}, max_retries=2, schedule=False)

    for _ in range(3):
        assert engine.process_queue().processed_count == 1
        dispatcher.drain()
        clock.advance(seconds=1000)

    dead = engine.queue.get_task(task.task_id)
    assert dead.status == TaskStatus.DEAD_LETTER
    assert dead.retry_count == 2
    assert dead.error_message == "agent crashed"
    flaky = engine.registry.get(agent.agent_id)
    assert flaky.total_tasks_failed == 3
    assert flaky.health_score == 70.0
    assert flaky.current_task_count == 0
    assert engine.process_queue().processed_count == 0


def test_full_pipeline_executes_and_verifies(
    orchestrator: Orchestrator,
    dispatcher: DeferredDispatcher,
) -> None:
    agent = orchestrator.registry.register("analyzer", "analyst", ["statistical_analysis"])
    task = orchestrator.queue.enqueue("analyzer", {"values": [1, 2, 3]})

    assert dispatcher.drain() == 3

    done = orchestrator.queue.get_task(task.task_id)
    assert done.status == TaskStatus.COMPLETED
    assert done.verification_status == VerificationStatus.VERIFIED
    assert done.result["result"]["mean"] == 2.0
    assert done.agent_id == agent.agent_id
    analyst = orchestrator.registry.get(agent.agent_id)
    assert analyst.total_tasks_completed == 1
    assert analyst.status == AgentStatus.IDLE
    assert analyst.current_task_count == 0
    assert orchestrator.execute_task(task.task_id) is None

    stats = orchestrator.statistics()
    assert stats.tasks["created"] == 1.0
    assert stats.tasks["completed"] == 1.0
    assert stats.agents["total_tasks_completed"] == 1.0


def test_rejected_output_is_retried(
    repository: OrchestratorRepository,
    settings: Settings,
    dispatcher: DeferredDispatcher,
) -> None:
    engine = _engine(repository, settings, dispatcher, EmptyBackend())
    agent = engine.registry.register("analyzer", "sloppy", ["statistical_analysis"])
    task = engine.queue.enqueue("analyzer", {"values": [1]}, schedule=False)

    engine.process_queue()
    dispatcher.drain()

    retried = engine.queue.get_task(task.task_id)
    assert retried.status == TaskStatus.PENDING
    assert retried.retry_count == 1
    assert retried.run_after is not None
    sloppy = engine.registry.get(agent.agent_id)
    assert sloppy.total_tasks_failed == 1
    assert sloppy.total_tasks_completed == 0


def test_health_check_scores_agents_and_queue(orchestrator: Orchestrator) -> None:
    empty = orchestrator.health_check()

    assert empty.status == HealthStatus.DEGRADED
    assert empty.score == 50.0
    assert "Register agents - the pool is empty" in empty.recommendations

    orchestrator.registry.register("analyzer", "analyst", ["statistical_analysis"])
    healthy = orchestrator.health_check()

    assert healthy.status == HealthStatus.HEALTHY
    assert healthy.score == 100.0
    assert healthy.queue_health_percentage == 100.0
    assert healthy.recommendations == []


def test_health_check_reports_backlog_and_offline_agents(
    repository: OrchestratorRepository,
    dispatcher: DeferredDispatcher,
    db_path,
) -> None:
    settings = Settings(db_path=db_path)
    settings.health.backlog_threshold = 2
    engine = Orchestrator(repository=repository, settings=settings, dispatcher=dispatcher)
    offline = engine.registry.register("analyzer", "gone", ["statistical_analysis"])
    engine.registry.register("analyzer", "here", ["statistical_analysis"])
    engine.registry.mark_offline(offline.agent_id)
    for _ in range(4):
        engine.queue.enqueue("analyzer", schedule=False)

    report = engine.health_check()

    assert report.agent_health_percentage == 50.0
    assert report.queue_health_percentage == 50.0
    assert report.score == 50.0
    assert "Scale up agents - 4 tasks pending" in report.recommendations
    assert "Some agents are offline - check heartbeats" in report.recommendations


def test_rebalance_moves_assigned_tasks_off_overloaded_agent(
    orchestrator: Orchestrator,
    repository: OrchestratorRepository,
) -> None:
    busy = orchestrator.registry.register(
        "analyzer",
        "busy",
        ["statistical_analysis"],
        config={"max_concurrent_tasks": 2},
    )
    spare = orchestrator.registry.register("analyzer", "spare", ["statistical_analysis"])
    warmup = orchestrator.queue.enqueue("analyzer", schedule=False)
    repository.assign_task(task_id=warmup.task_id, agent_id=busy.agent_id, strategy="manual")
    repository.transition_task(
        warmup.task_id,
        expected=TaskStatus.ASSIGNED,
        target=TaskStatus.FAILED,
        event_type="task_failed",
        message="failed",
        agent_outcome=AgentOutcome(failed=1),
    )
    task_ids = [orchestrator.queue.enqueue("analyzer", schedule=False).task_id for _ in range(2)]
    for task_id in task_ids:
        repository.assign_task(task_id=task_id, agent_id=busy.agent_id, strategy="manual")

    moved = orchestrator.rebalance_workload()

    assert moved == 2
    for task_id in task_ids:
        assert orchestrator.queue.get_task(task_id).agent_id == spare.agent_id
    assert orchestrator.registry.get(busy.agent_id).current_task_count == 0
    assert orchestrator.registry.get(busy.agent_id).status == AgentStatus.IDLE
    assert orchestrator.registry.get(spare.agent_id).current_task_count == 2


def test_scale_agents_up_and_down(orchestrator: Orchestrator) -> None:
    grown = orchestrator.scale_agents("validator", 2)

    assert grown.previous_count == 0
    assert grown.current_count == 2
    assert len(grown.registered_ids) == 2
    assert orchestrator.registry.get(grown.registered_ids[0]).capabilities == (
        "data_validation",
        "rule_checking",
        "format_verification",
    )

    shrunk = orchestrator.scale_agents("validator", 1)

    assert shrunk.current_count == 1
    assert len(shrunk.offline_ids) == 1
    assert orchestrator.scale_agents("validator", 1).registered_ids == []
    with pytest.raises(ValidationError):
        orchestrator.scale_agents("validator", -1)


def test_optimize_runs_every_maintenance_step(
    orchestrator: Orchestrator,
    repository: OrchestratorRepository,
) -> None:
    orchestrator.registry.register("analyzer", "analyst", ["statistical_analysis"])
    failed = orchestrator.queue.enqueue("analyzer", schedule=False)
    repository.transition_task(
        failed.task_id,
        expected=TaskStatus.PENDING,
        target=TaskStatus.FAILED,
        event_type="task_failed",
        message="failed",
    )

    report = orchestrator.optimize()

    assert report.errors == {}
    assert report.rebalanced == 0
    assert report.retry is not None
    assert report.retry.retried_count == 1
    assert report.actions == 1
    events = repository.list_events(limit=1)
    assert events[0].event_type == "system_optimized"


def test_start_records_event_and_snapshot(
    orchestrator: Orchestrator,
    repository: OrchestratorRepository,
) -> None:
    orchestrator.registry.register("analyzer", "analyst", ["statistical_analysis"])
    orchestrator.queue.enqueue("analyzer", schedule=False)

    report = orchestrator.start()

    assert report.agents.total == 1
    assert report.queue.pending == 1
    assert repository.list_events(limit=1)[0].event_type == "orchestrator_started"
