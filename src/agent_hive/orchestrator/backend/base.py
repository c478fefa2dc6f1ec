"""Agent execution capability interface and per-type lookup table."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from agent_hive.orchestrator.errors import ExecutionFailure
from agent_hive.orchestrator.models import AgentView, TaskView

REVIEW_TASK_TYPE = "review"


class AgentBackend(Protocol):
    """Protocol implemented by agent execution capabilities.

    ``execute`` runs synchronously and must not mutate orchestration state;
    failures are signalled by raising or by returning ``{"error": ...}``.
    """

    def execute(self, task: TaskView, agent: AgentView) -> Any:
        """Run the task on behalf of the agent and return its output."""


class BackendRegistry:
    """Lookup table of execution capabilities keyed by agent type."""

    def __init__(
        self,
        backends: Mapping[str, AgentBackend] | None = None,
        *,
        default: AgentBackend | None = None,
    ) -> None:
        self._backends: dict[str, AgentBackend] = dict(backends or {})
        self._default = default

    def register(self, agent_type: str, backend: AgentBackend) -> None:
        self._backends[agent_type] = backend

    def agent_types(self) -> list[str]:
        return sorted(self._backends)

    def for_agent(self, agent: AgentView) -> AgentBackend:
        backend = self._backends.get(agent.agent_type, self._default)
        if backend is None:
            raise ExecutionFailure(f"No backend registered for agent type {agent.agent_type!r}")
        return backend
