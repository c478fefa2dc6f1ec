"""Interchangeable agent-selection strategies.

Each selector orders already-eligible agents best-first; the queue then
tries to claim a slot on each in turn.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from agent_hive.orchestrator.models import AgentView, AssignmentStrategy, TaskView
from agent_hive.orchestrator.scoring import agent_load_score, capability_score

AgentSelector = Callable[[list[AgentView], TaskView], list[AgentView]]

_NEVER_ASSIGNED = datetime.min.replace(tzinfo=UTC)


def least_loaded(agents: list[AgentView], task: TaskView) -> list[AgentView]:
    return sorted(
        agents,
        key=lambda agent: (agent_load_score(agent), agent.current_task_count, agent.name),
    )


def round_robin(agents: list[AgentView], task: TaskView) -> list[AgentView]:
    """Agent whose last assignment is oldest goes first."""

    return sorted(
        agents,
        key=lambda agent: (agent.last_assigned_at or _NEVER_ASSIGNED, agent.name),
    )


def capability_match(agents: list[AgentView], task: TaskView) -> list[AgentView]:
    return sorted(
        agents,
        key=lambda agent: (-capability_score(agent, task.task_type), agent.name),
    )


# Performance floor is applied by the agent query; ordering is least-loaded.
AGENT_SELECTORS: dict[AssignmentStrategy, AgentSelector] = {
    AssignmentStrategy.LEAST_LOADED: least_loaded,
    AssignmentStrategy.ROUND_ROBIN: round_robin,
    AssignmentStrategy.CAPABILITY_MATCH: capability_match,
    AssignmentStrategy.HIGH_PERFORMER: least_loaded,
}
