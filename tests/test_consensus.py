from __future__ import annotations

from typing import Any

import allure
import pytest

from agent_hive.config import ConsensusSettings, RegistrySettings
from agent_hive.orchestrator.backend import BackendRegistry, builtin_registry
from agent_hive.orchestrator.consensus import CONSENSUS_BLOCK_REASON, ConsensusMechanism
from agent_hive.orchestrator.errors import ValidationError
from agent_hive.orchestrator.models import (
    AgentOutcome,
    AgentView,
    CollaborationStatus,
    CollaborationType,
    EventSeverity,
    TaskCreate,
    TaskStatus,
    TaskView,
    VerificationStatus,
)
from agent_hive.orchestrator.registry import AgentRegistry
from agent_hive.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("Consensus Mechanism"),
]


class OpinionatedBackend:
    """Every agent answers with its own name, so no two outputs agree."""

    def execute(self, task: TaskView, agent: AgentView) -> Any:
        return {"result": agent.name}


class SkepticBackend:
    def execute(self, task: TaskView, agent: AgentView) -> Any:
        return {"vote": "No", "confidence": 0.9, "reasoning": "not convinced"}


class BrokenBackend:
    def execute(self, task: TaskView, agent: AgentView) -> Any:
        raise RuntimeError("backend offline")


@pytest.fixture()
def registry(repository: OrchestratorRepository) -> AgentRegistry:
    return AgentRegistry(repository, RegistrySettings())


def _mechanism(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
    backends: BackendRegistry | None = None,
) -> ConsensusMechanism:
    return ConsensusMechanism(
        repository=repository,
        registry=registry,
        settings=ConsensusSettings(),
        registry_settings=RegistrySettings(),
        backends=backends or builtin_registry(),
    )


def _analyzers(registry: AgentRegistry, count: int) -> list[AgentView]:
    return [
        registry.register("analyzer", f"analyst-{index}", ["statistical_analysis"])
        for index in range(count)
    ]


def test_consensus_task_is_reserved_from_the_regular_queue(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
) -> None:
    mechanism = _mechanism(repository, registry)

    created = mechanism.create_consensus_task("analyzer", {"values": [1, 2]}, required_agents=2)

    assert created.task.blocked_reason == CONSENSUS_BLOCK_REASON
    assert created.task.max_retries == 0
    assert created.task.metadata["requires_consensus"] is True
    assert created.task.metadata["consensus_threshold"] == 0.7
    assert created.collaboration.collaboration_type == CollaborationType.CONSENSUS
    assert created.collaboration.status == CollaborationStatus.PENDING
    assert created.collaboration.settings["required_agents"] == 2
    assert repository.list_ready_tasks(limit=None) == []

    with pytest.raises(ValidationError, match="threshold"):
        mechanism.create_consensus_task("analyzer", threshold=1.5)
    with pytest.raises(ValidationError, match="required_agents"):
        mechanism.create_consensus_task("analyzer", required_agents=0)


def test_identical_outputs_reach_consensus(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
) -> None:
    _analyzers(registry, 3)
    mechanism = _mechanism(repository, registry)
    created = mechanism.create_consensus_task("analyzer", {"values": [1, 2, 3]})

    outcome = mechanism.execute_consensus_task(created.collaboration.collaboration_id)

    assert outcome.success is True
    assert outcome.consensus_reached is True
    assert outcome.agreement_count == 3
    assert outcome.agreement_percentage == 100.0
    assert outcome.consensus_result["result"]["mean"] == 2.0
    task = repository.get_task(created.task.task_id)
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.verification_status == VerificationStatus.VERIFIED
    assert task.blocked_reason is None
    assert task.result == outcome.consensus_result
    collaboration = repository.get_collaboration(created.collaboration.collaboration_id)
    assert collaboration is not None
    assert collaboration.status == CollaborationStatus.COMPLETED
    assert len(collaboration.results) == 3

    repeat = mechanism.execute_consensus_task(created.collaboration.collaboration_id)
    assert repeat.consensus_reached is True
    assert repeat.agreement_percentage == 100.0


def test_disagreeing_outputs_fail_the_task(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
) -> None:
    _analyzers(registry, 3)
    mechanism = _mechanism(repository, registry, BackendRegistry(default=OpinionatedBackend()))
    created = mechanism.create_consensus_task("analyzer", {"values": [1]})

    outcome = mechanism.execute_consensus_task(created.collaboration.collaboration_id)

    assert outcome.success is True
    assert outcome.consensus_reached is False
    assert outcome.agreement_count == 1
    assert outcome.agreement_percentage == pytest.approx(33.33)
    task = repository.get_task(created.task.task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.error_message == "consensus_not_reached"
    events = repository.list_events(task_id=created.task.task_id, severity=EventSeverity.WARNING)
    assert events[0].event_type == "consensus_not_reached"


def test_insufficient_agents_fail_collaboration_and_task(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
) -> None:
    _analyzers(registry, 2)
    mechanism = _mechanism(repository, registry)
    created = mechanism.create_consensus_task("analyzer", {"values": [1]}, required_agents=3)

    outcome = mechanism.execute_consensus_task(created.collaboration.collaboration_id)

    assert outcome.success is False
    assert outcome.error == "insufficient_agents"
    assert outcome.total_agents == 2
    task = repository.get_task(created.task.task_id)
    collaboration = repository.get_collaboration(created.collaboration.collaboration_id)
    assert task is not None
    assert collaboration is not None
    assert task.status == TaskStatus.FAILED
    assert collaboration.status == CollaborationStatus.FAILED
    assert collaboration.outcome["available"] == 2


def test_consensus_agents_must_be_high_performers(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
) -> None:
    agents = _analyzers(registry, 2)
    task = repository.create_task(TaskCreate(task_type="analyzer"))
    repository.assign_task(task_id=task.task_id, agent_id=agents[0].agent_id, strategy="manual")
    repository.transition_task(
        task.task_id,
        expected=TaskStatus.ASSIGNED,
        target=TaskStatus.FAILED,
        event_type="task_failed",
        message="failed",
        agent_outcome=AgentOutcome(failed=1),
    )
    mechanism = _mechanism(repository, registry)

    selected = mechanism.select_consensus_agents(task)

    assert [agent.agent_id for agent in selected] == [agents[1].agent_id]


def test_vote_majority_wins(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
) -> None:
    backends = builtin_registry()
    backends.register("skeptic", SkepticBackend())
    first = registry.register("validator", "validator-1", ["rule_checking"])
    second = registry.register("validator", "validator-2", ["rule_checking"])
    skeptic = registry.register("skeptic", "skeptic", ["rule_checking"])
    task = repository.create_task(TaskCreate(task_type="validator", input={"amount": 10}))
    mechanism = _mechanism(repository, registry, backends)

    result = mechanism.conduct_vote(
        task.task_id,
        [first.agent_id, second.agent_id, skeptic.agent_id],
        question="Is the record plausible?",
    )

    assert result.tally == {"yes": 2, "no": 1}
    assert result.winner == "yes"
    assert result.consensus_reached is True
    assert result.confidence == pytest.approx(0.83)
    assert result.votes[2].reasoning == "not convinced"
    collaboration = repository.get_collaboration(result.collaboration_id)
    assert collaboration is not None
    assert collaboration.status == CollaborationStatus.COMPLETED
    assert collaboration.outcome["winner"] == "yes"

    with pytest.raises(ValidationError, match="voting agent"):
        mechanism.conduct_vote(task.task_id, [])


def test_vote_records_failing_voters(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
) -> None:
    backends = builtin_registry()
    backends.register("broken", BrokenBackend())
    voter = registry.register("validator", "validator-1", ["rule_checking"])
    broken = registry.register("broken", "broken", ["rule_checking"])
    task = repository.create_task(TaskCreate(task_type="validator"))
    mechanism = _mechanism(repository, registry, backends)

    result = mechanism.conduct_vote(task.task_id, [voter.agent_id, broken.agent_id])

    assert [vote.agent_id for vote in result.votes] == [voter.agent_id]
    assert result.errors == {broken.agent_id: "backend offline"}
    assert result.consensus_reached is True


def test_collaborative_solve_merges_primary_and_suggestions(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
) -> None:
    agents = _analyzers(registry, 4)
    task = repository.create_task(TaskCreate(task_type="analyzer", input={"values": [2, 4]}))
    mechanism = _mechanism(repository, registry)

    result = mechanism.collaborative_solve(task.task_id)

    assert result.success is True
    assert result.primary_agent_id == agents[0].agent_id
    assert result.combined["primary"]["result"]["mean"] == 3.0
    assert len(result.combined["suggestions"]) == 2
    collaboration = repository.get_collaboration(result.collaboration_id)
    assert collaboration is not None
    assert collaboration.collaboration_type == CollaborationType.ASSISTANCE
    assert collaboration.results[agents[0].agent_id]["role"] == "primary"


def test_collaborative_solve_without_agents_is_skipped(
    repository: OrchestratorRepository,
    registry: AgentRegistry,
) -> None:
    task = repository.create_task(TaskCreate(task_type="reporter"))
    mechanism = _mechanism(repository, registry)

    result = mechanism.collaborative_solve(task.task_id)

    assert result.success is False
    assert result.collaboration_id is None
    assert result.error == "insufficient_agents"
    events = repository.list_events(task_id=task.task_id, severity=EventSeverity.WARNING)
    assert events[0].event_type == "collaboration_skipped"
