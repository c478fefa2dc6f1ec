from __future__ import annotations

import logging
import threading
from datetime import timedelta

import allure
import pytest

from agent_hive.orchestrator.errors import InvalidStateError, ValidationError
from agent_hive.orchestrator.models import (
    AgentCreate,
    AgentStatus,
    AssignOutcome,
    CollaborationCreate,
    CollaborationStatus,
    CollaborationType,
    TaskCreate,
    TaskStatus,
)
from agent_hive.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("Durable State & Transitions"),
]


def _agent(repository: OrchestratorRepository, name: str, *, max_tasks: int = 5) -> str:
    return repository.create_agent(
        AgentCreate(
            agent_type="analyzer",
            name=name,
            capabilities=("statistical_analysis",),
            max_concurrent_tasks=max_tasks,
        ),
    ).agent_id


def _task(repository: OrchestratorRepository, **kwargs) -> str:
    return repository.create_task(TaskCreate(task_type="analyzer", **kwargs)).task_id


def _complete(repository: OrchestratorRepository, task_id: str, agent_id: str) -> None:
    assert (
        repository.assign_task(task_id=task_id, agent_id=agent_id, strategy="least_loaded")
        == AssignOutcome.ASSIGNED
    )
    assert repository.transition_task(
        task_id,
        expected=TaskStatus.ASSIGNED,
        target=TaskStatus.PROCESSING,
        event_type="task_started",
        message="started",
    )
    assert repository.transition_task(
        task_id,
        expected=TaskStatus.PROCESSING,
        target=TaskStatus.COMPLETED,
        event_type="task_completed",
        message="completed",
        values={"result_json": '{"result": 1}', "completed_at": repository.now()},
    )


def test_concurrent_capacity_claims_never_exceed_max(repository: OrchestratorRepository) -> None:
    agent_id = _agent(repository, "capped", max_tasks=2)
    task_ids = [_task(repository) for _ in range(6)]
    barrier = threading.Barrier(len(task_ids))
    outcomes: list[AssignOutcome] = []
    lock = threading.Lock()

    def _claim(task_id: str) -> None:
        barrier.wait(timeout=5)
        outcome = repository.assign_task(task_id=task_id, agent_id=agent_id, strategy="least_loaded")
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_claim, args=(task_id,)) for task_id in task_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    agent = repository.get_agent(agent_id)
    assert agent is not None
    assert outcomes.count(AssignOutcome.ASSIGNED) == 2
    assert outcomes.count(AssignOutcome.AGENT_UNAVAILABLE) == 4
    assert agent.current_task_count == 2
    assert len(repository.list_tasks(status=TaskStatus.ASSIGNED)) == 2


def test_illegal_transition_raises_and_lost_race_is_not_applied(
    repository: OrchestratorRepository,
) -> None:
    task_id = _task(repository)

    with pytest.raises(InvalidStateError, match="Illegal task transition"):
        repository.transition_task(
            task_id,
            expected=TaskStatus.PENDING,
            target=TaskStatus.COMPLETED,
            event_type="noop",
            message="noop",
        )
    applied = repository.transition_task(
        task_id,
        expected=TaskStatus.ASSIGNED,
        target=TaskStatus.PROCESSING,
        event_type="noop",
        message="noop",
    )

    assert applied is False
    task = repository.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.PENDING


def test_task_becomes_ready_only_after_dependencies_complete(
    repository: OrchestratorRepository,
) -> None:
    agent_id = _agent(repository, "worker")
    first = _task(repository, priority=1)
    second = _task(repository, priority=9, dependencies=(first,))

    assert [task.task_id for task in repository.list_ready_tasks(limit=None)] == [first]
    assert repository.unmet_dependencies(second) == [first]

    _complete(repository, first, agent_id)

    assert [task.task_id for task in repository.list_ready_tasks(limit=None)] == [second]
    assert repository.unmet_dependencies(second) == []


def test_unknown_dependency_is_rejected(repository: OrchestratorRepository) -> None:
    with pytest.raises(ValidationError, match="Unknown dependency"):
        _task(repository, dependencies=("missing-task",))


def test_leaving_in_flight_status_releases_agent_slot(repository: OrchestratorRepository) -> None:
    agent_id = _agent(repository, "worker", max_tasks=1)
    task_id = _task(repository)
    repository.assign_task(task_id=task_id, agent_id=agent_id, strategy="least_loaded")

    busy = repository.get_agent(agent_id)
    assert busy is not None
    assert busy.status == AgentStatus.BUSY
    assert busy.current_task_count == 1

    repository.transition_task(
        task_id,
        expected=TaskStatus.ASSIGNED,
        target=TaskStatus.FAILED,
        event_type="task_failed",
        message="failed",
    )

    agent = repository.get_agent(agent_id)
    assert agent is not None
    assert agent.status == AgentStatus.IDLE
    assert agent.current_task_count == 0


def test_offline_agent_keeps_no_in_flight_tasks(repository: OrchestratorRepository) -> None:
    agent_id = _agent(repository, "worker")
    task_ids = [_task(repository) for _ in range(2)]
    for task_id in task_ids:
        repository.assign_task(task_id=task_id, agent_id=agent_id, strategy="least_loaded")
    repository.transition_task(
        task_ids[0],
        expected=TaskStatus.ASSIGNED,
        target=TaskStatus.PROCESSING,
        event_type="task_started",
        message="started",
    )

    result = repository.take_agent_out_of_service(
        agent_id,
        target=AgentStatus.OFFLINE,
        from_statuses={AgentStatus.IDLE, AgentStatus.BUSY},
        reason="manual",
    )

    assert result.applied is True
    assert sorted(result.requeued_task_ids) == sorted(task_ids)
    for task_id in task_ids:
        task = repository.get_task(task_id)
        assert task is not None
        assert task.status == TaskStatus.PENDING
        assert task.agent_id is None
        assert task.metadata["reassigned_from"] == agent_id
    agent = repository.get_agent(agent_id)
    assert agent is not None
    assert agent.status == AgentStatus.OFFLINE
    assert agent.current_task_count == 0


def test_collaboration_results_are_frozen_after_finish(repository: OrchestratorRepository) -> None:
    first = _agent(repository, "first")
    second = _agent(repository, "second")
    task_id = _task(repository)
    collaboration = repository.create_collaboration(
        CollaborationCreate(task_id=task_id, collaboration_type=CollaborationType.REVIEW),
    )
    collaboration_id = collaboration.collaboration_id

    assert repository.start_collaboration(collaboration_id, participants=[first, second])
    assert not repository.start_collaboration(collaboration_id, participants=[first])
    assert repository.record_collaboration_result(
        collaboration_id,
        agent_id=first,
        result={"quality_score": 80},
    )
    assert not repository.record_collaboration_result(
        collaboration_id,
        agent_id=first,
        result={"quality_score": 10},
    )
    with pytest.raises(InvalidStateError, match="not a participant"):
        repository.record_collaboration_result(
            collaboration_id,
            agent_id="outsider",
            result={},
        )
    assert repository.finish_collaboration(
        collaboration_id,
        status=CollaborationStatus.COMPLETED,
        outcome={"done": True},
        message="done",
    )

    assert not repository.record_collaboration_result(
        collaboration_id,
        agent_id=second,
        result={"quality_score": 90},
    )
    stored = repository.get_collaboration(collaboration_id)
    assert stored is not None
    assert stored.results == {first: {"quality_score": 80}}
    assert stored.pending_agent_ids == (second,)
    assert stored.status == CollaborationStatus.COMPLETED


def test_cleanup_keeps_tasks_that_unfinished_work_depends_on(
    repository: OrchestratorRepository,
    clock,
) -> None:
    agent_id = _agent(repository, "worker")
    kept = _task(repository)
    purged = _task(repository)
    _complete(repository, kept, agent_id)
    _complete(repository, purged, agent_id)
    dependent = _task(repository, dependencies=(kept,))

    clock.advance(days=31)
    deleted = repository.delete_finished_tasks(before=repository.now() - timedelta(days=30))

    assert deleted == 1
    assert repository.get_task(purged) is None
    assert repository.get_task(kept) is not None
    assert repository.get_task(dependent) is not None


def test_events_are_mirrored_to_logging(
    repository: OrchestratorRepository,
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level(logging.INFO, logger="agent_hive.orchestrator.repository"):
        task_id = _task(repository)

    events = repository.list_events(task_id=task_id)
    assert [event.event_type for event in events] == ["task_enqueued"]
    assert any("task_enqueued" in record.getMessage() for record in caplog.records)
