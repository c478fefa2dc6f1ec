from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from agent_hive.config import RegistrySettings
from agent_hive.orchestrator.errors import NotFoundError, ValidationError
from agent_hive.orchestrator.models import (
    AgentOutcome,
    AgentStatus,
    HeartbeatOutcome,
    TaskCreate,
    TaskStatus,
)
from agent_hive.orchestrator.registry import AgentRegistry
from agent_hive.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("Agent Registry"),
]


@pytest.fixture()
def registry(repository: OrchestratorRepository) -> AgentRegistry:
    return AgentRegistry(repository, RegistrySettings())


def test_register_creates_idle_agent_with_tags(registry: AgentRegistry) -> None:
    agent = registry.register(
        "analyzer",
        "analyst-1",
        ["statistical_analysis", "anomaly_detection"],
        ["finance"],
        {"max_concurrent_tasks": 2, "region": "eu"},
    )

    assert agent.status == AgentStatus.IDLE
    assert agent.capabilities == ("statistical_analysis", "anomaly_detection")
    assert agent.specializations == ("finance",)
    assert agent.max_concurrent_tasks == 2
    assert agent.configuration == {"region": "eu"}
    assert agent.success_rate == 100.0
    assert agent.health_score == 100.0


def test_register_validates_input(registry: AgentRegistry) -> None:
    registry.register("analyzer", "analyst-1", ["statistical_analysis"])

    with pytest.raises(ValidationError, match="already registered"):
        registry.register("analyzer", "analyst-1", ["statistical_analysis"])
    with pytest.raises(ValidationError, match="capability"):
        registry.register("analyzer", "analyst-2", ["  "])
    with pytest.raises(ValidationError, match="max_concurrent_tasks"):
        registry.register("analyzer", "analyst-3", ["x"], config={"max_concurrent_tasks": 0})


def test_heartbeat_rejects_unknown_and_deregistered_agents(registry: AgentRegistry) -> None:
    agent = registry.register("analyzer", "analyst-1", ["statistical_analysis"])
    registry.deregister(agent.agent_id)

    with pytest.raises(NotFoundError):
        registry.heartbeat("missing")
    with pytest.raises(NotFoundError):
        registry.heartbeat(agent.agent_id)


def test_monitor_heartbeats_is_idempotent(
    registry: AgentRegistry,
    repository: OrchestratorRepository,
    clock,
) -> None:
    quiet = registry.register("analyzer", "quiet", ["statistical_analysis"])
    chatty = registry.register("analyzer", "chatty", ["statistical_analysis"])
    clock.advance(seconds=601)
    registry.heartbeat(chatty.agent_id)

    first = registry.monitor_heartbeats()
    second = registry.monitor_heartbeats()

    assert first.stale_ids == [quiet.agent_id]
    assert first.newly_offline_ids == [quiet.agent_id]
    assert second.stale_ids == [quiet.agent_id]
    assert second.newly_offline_ids == []
    offline_events = [
        event
        for event in repository.list_events(agent_id=quiet.agent_id)
        if event.event_type == "agent_offline"
    ]
    assert len(offline_events) == 1
    assert registry.get(quiet.agent_id).stale is True
    assert registry.get(chatty.agent_id).status == AgentStatus.IDLE


def test_stale_agent_tasks_are_requeued_for_another_agent(
    registry: AgentRegistry,
    repository: OrchestratorRepository,
    clock,
) -> None:
    stale = registry.register("analyzer", "stale", ["statistical_analysis"])
    task = repository.create_task(TaskCreate(task_type="analyzer"))
    repository.assign_task(task_id=task.task_id, agent_id=stale.agent_id, strategy="least_loaded")
    clock.advance(seconds=601)
    healthy = registry.register("analyzer", "healthy", ["statistical_analysis"])

    report = registry.monitor_heartbeats()

    requeued = repository.get_task(task.task_id)
    assert requeued is not None
    assert report.newly_offline_ids == [stale.agent_id]
    assert requeued.status == TaskStatus.PENDING
    assert requeued.metadata["reassigned_from"] == stale.agent_id
    assert [agent.agent_id for agent in registry.eligible_agents("analyzer")] == [healthy.agent_id]


def test_offline_agent_reactivates_only_on_newer_heartbeat(
    registry: AgentRegistry,
    clock,
) -> None:
    agent = registry.register("analyzer", "analyst-1", ["statistical_analysis"])
    offline_at = clock()
    assert registry.mark_offline(agent.agent_id).applied is True
    assert registry.mark_offline(agent.agent_id).applied is False

    ignored = registry.heartbeat(agent.agent_id, sent_at=offline_at - timedelta(seconds=5))
    clock.advance(seconds=1)
    revived = registry.heartbeat(agent.agent_id)

    assert ignored == HeartbeatOutcome.IGNORED
    assert revived == HeartbeatOutcome.REACTIVATED
    assert registry.get(agent.agent_id).status == AgentStatus.IDLE
    assert registry.heartbeat(agent.agent_id) == HeartbeatOutcome.RECORDED


def test_capability_and_specialization_filters_skip_inactive_agents(
    registry: AgentRegistry,
) -> None:
    active = registry.register("analyzer", "active", ["data_profiling"], ["finance"])
    offline = registry.register("analyzer", "offline", ["data_profiling"], ["finance"])
    registry.register("validator", "other", ["rule_checking"])
    registry.mark_offline(offline.agent_id)

    assert [a.agent_id for a in registry.agents_with_capability("data_profiling")] == [
        active.agent_id,
    ]
    assert [a.agent_id for a in registry.agents_with_specialization("finance")] == [
        active.agent_id,
    ]
    assert registry.agents_with_capability("missing") == []


def test_system_health_and_load_distribution(
    registry: AgentRegistry,
    repository: OrchestratorRepository,
) -> None:
    assert registry.system_health().health_percentage == 0.0

    busy = registry.register("analyzer", "busy", ["statistical_analysis"])
    registry.register("analyzer", "idle", ["statistical_analysis"])
    gone = registry.register("analyzer", "gone", ["statistical_analysis"])
    task = repository.create_task(TaskCreate(task_type="analyzer"))
    repository.assign_task(task_id=task.task_id, agent_id=busy.agent_id, strategy="least_loaded")
    registry.mark_offline(gone.agent_id)

    health = registry.system_health()
    distribution = registry.load_distribution()

    assert health.total == 3
    assert health.active == 2
    assert health.health_percentage == pytest.approx(66.67)
    assert health.count(AgentStatus.BUSY) == 1
    assert distribution[0].agent.agent_id == busy.agent_id
    assert distribution[0].load_score > distribution[-1].load_score
    assert health.recent_events


def test_health_floor_marks_agent_failed_and_requeues(
    repository: OrchestratorRepository,
) -> None:
    registry = AgentRegistry(repository, RegistrySettings(failure_health_floor=80.0))
    agent = registry.register("analyzer", "fragile", ["statistical_analysis"])
    task = repository.create_task(TaskCreate(task_type="analyzer"))
    repository.assign_task(task_id=task.task_id, agent_id=agent.agent_id, strategy="least_loaded")
    other = repository.create_task(TaskCreate(task_type="analyzer"))
    repository.assign_task(task_id=other.task_id, agent_id=agent.agent_id, strategy="least_loaded")
    repository.transition_task(
        task.task_id,
        expected=TaskStatus.ASSIGNED,
        target=TaskStatus.FAILED,
        event_type="task_failed",
        message="failed",
        agent_outcome=AgentOutcome(failed=1, health_delta=-25.0),
    )

    assert registry.enforce_health_floor(agent.agent_id) is True

    failed = registry.get(agent.agent_id)
    requeued = repository.get_task(other.task_id)
    assert failed.status == AgentStatus.FAILED
    assert failed.total_tasks_failed == 1
    assert failed.success_rate == 0.0
    assert requeued is not None
    assert requeued.status == TaskStatus.PENDING
    assert registry.enforce_health_floor(agent.agent_id) is False


def test_agent_performance_reports_load(registry: AgentRegistry) -> None:
    agent = registry.register("analyzer", "analyst-1", ["statistical_analysis"])

    performance = registry.agent_performance(agent.agent_id)

    assert performance.load_score == 0.0
    assert performance.utilization == 0.0
    with pytest.raises(NotFoundError):
        registry.agent_performance("missing")
