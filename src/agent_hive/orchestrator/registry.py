"""Agent lifecycle, heartbeat and load bookkeeping."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from agent_hive.config import RegistrySettings
from agent_hive.orchestrator.errors import NotFoundError, ValidationError
from agent_hive.orchestrator.models import (
    ACTIVE_AGENT_STATUSES,
    AgentCreate,
    AgentStatus,
    AgentView,
    EventView,
    HeartbeatOutcome,
    OfflineResult,
)
from agent_hive.orchestrator.repository import OrchestratorRepository
from agent_hive.orchestrator.scoring import agent_load_score

logger = logging.getLogger(__name__)

MARK_FAILED_HEALTH_PENALTY = 20.0


@dataclass(slots=True)
class HeartbeatReport:
    """Result of one heartbeat monitor pass."""

    checked: int
    stale_ids: list[str]
    newly_offline_ids: list[str] = field(default_factory=list)

    @property
    def stale_count(self) -> int:
        return len(self.stale_ids)


@dataclass(slots=True)
class LoadEntry:
    agent: AgentView
    load_score: float
    utilization: float


@dataclass(slots=True)
class RegistryHealth:
    """Aggregate snapshot of the agent pool."""

    total: int
    active: int
    counts: dict[str, int]
    health_percentage: float
    load_distribution: list[LoadEntry]
    recent_events: list[EventView]

    def count(self, status: AgentStatus) -> int:
        return self.counts.get(status.value, 0)


@dataclass(slots=True)
class AgentPerformance:
    agent_id: str
    name: str
    agent_type: str
    status: AgentStatus
    success_rate: float
    total_tasks_completed: int
    total_tasks_failed: int
    average_completion_seconds: float | None
    health_score: float
    load_score: float
    utilization: float


class AgentRegistry:
    """Owns agent registration, liveness and health bookkeeping."""

    def __init__(self, repository: OrchestratorRepository, settings: RegistrySettings) -> None:
        self.repository = repository
        self.settings = settings

    def register(
        self,
        agent_type: str,
        name: str,
        capabilities: Iterable[str] | Mapping[str, Any],
        specializations: Iterable[str] = (),
        config: Mapping[str, Any] | None = None,
    ) -> AgentView:
        """Create an idle agent with heartbeat stamped now."""

        agent_type = (agent_type or "").strip()
        name = (name or "").strip()
        if not agent_type:
            raise ValidationError("Agent type is required.")
        if not name:
            raise ValidationError("Agent name is required.")
        capability_tags = _normalize_tags(capabilities, label="capability")
        if not capability_tags:
            raise ValidationError("At least one capability is required.")
        specialization_tags = _normalize_tags(specializations, label="specialization")

        configuration = dict(config or {})
        max_tasks = configuration.pop(
            "max_concurrent_tasks",
            self.settings.default_max_concurrent_tasks,
        )
        if isinstance(max_tasks, bool) or not isinstance(max_tasks, int) or max_tasks <= 0:
            raise ValidationError(
                f"max_concurrent_tasks must be a positive integer, got {max_tasks!r}.",
            )
        return self.repository.create_agent(
            AgentCreate(
                agent_type=agent_type,
                name=name,
                capabilities=capability_tags,
                specializations=specialization_tags,
                max_concurrent_tasks=max_tasks,
                configuration=configuration,
            ),
        )

    def get(self, agent_id: str) -> AgentView:
        agent = self.repository.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    def heartbeat(self, agent_id: str, *, sent_at: datetime | None = None) -> HeartbeatOutcome:
        return self.repository.record_heartbeat(agent_id, sent_at=sent_at)

    def mark_offline(self, agent_id: str, *, reason: str = "manual") -> OfflineResult:
        """Take an active agent offline and requeue its in-flight tasks. Idempotent."""

        result = self.repository.take_agent_out_of_service(
            agent_id,
            target=AgentStatus.OFFLINE,
            from_statuses=ACTIVE_AGENT_STATUSES,
            reason=reason,
        )
        if not result.applied:
            logger.debug("Agent %s not active, mark_offline skipped", agent_id)
        return result

    def mark_failed(
        self,
        agent_id: str,
        *,
        reason: str,
        health_penalty: float = MARK_FAILED_HEALTH_PENALTY,
    ) -> OfflineResult:
        return self.repository.take_agent_out_of_service(
            agent_id,
            target=AgentStatus.FAILED,
            from_statuses={AgentStatus.IDLE, AgentStatus.BUSY, AgentStatus.OFFLINE},
            reason=reason,
            health_penalty=health_penalty,
        )

    def deregister(self, agent_id: str) -> OfflineResult:
        """Terminal removal from service; the row is kept for history."""

        result = self.repository.take_agent_out_of_service(
            agent_id,
            target=AgentStatus.DEREGISTERED,
            from_statuses={
                AgentStatus.IDLE,
                AgentStatus.BUSY,
                AgentStatus.OFFLINE,
                AgentStatus.FAILED,
            },
            reason="deregistered",
        )
        if not result.applied:
            raise NotFoundError("Agent", agent_id)
        return result

    def enforce_health_floor(self, agent_id: str) -> bool:
        """Fail an active agent whose health dropped to the configured floor."""

        agent = self.repository.get_agent(agent_id)
        if agent is None or not agent.is_active:
            return False
        if agent.health_score > self.settings.failure_health_floor:
            return False
        return self.mark_failed(agent_id, reason="health_floor_reached", health_penalty=0.0).applied

    def monitor_heartbeats(self) -> HeartbeatReport:
        """Mark active agents with stale heartbeats offline.

        Already-offline stale agents stay in ``stale_ids`` but are not
        touched again, so repeated passes report the same stale set.
        """

        cutoff = self.repository.now() - timedelta(seconds=self.settings.heartbeat_stale_seconds)
        stale = self.repository.list_stale_agents(heartbeat_before=cutoff)
        newly_offline: list[str] = []
        for agent in stale:
            if not agent.is_active:
                continue
            result = self.repository.take_agent_out_of_service(
                agent.agent_id,
                target=AgentStatus.OFFLINE,
                from_statuses=ACTIVE_AGENT_STATUSES,
                reason="heartbeat_timeout",
                stale_before=cutoff,
            )
            if result.applied:
                newly_offline.append(agent.agent_id)
        counts = self.repository.count_agents_by_status()
        checked = sum(counts.values()) - counts.get(AgentStatus.DEREGISTERED.value, 0)
        if newly_offline:
            logger.warning(
                "Heartbeat monitor marked %d agent(s) offline: %s",
                len(newly_offline),
                ", ".join(newly_offline),
            )
        return HeartbeatReport(
            checked=checked,
            stale_ids=[agent.agent_id for agent in stale],
            newly_offline_ids=newly_offline,
        )

    def agents_with_capability(self, capability: str) -> list[AgentView]:
        return self.repository.find_agents(capability=capability)

    def agents_with_specialization(self, specialization: str) -> list[AgentView]:
        return self.repository.find_agents(specialization=specialization)

    def eligible_agents(
        self,
        task_type: str,
        *,
        exclude_ids: Iterable[str] = (),
        min_success_rate: float | None = None,
        with_capacity: bool = True,
    ) -> list[AgentView]:
        """Active agents able to run ``task_type``."""

        return self.repository.find_agents(
            handles_task_type=task_type,
            exclude_ids=exclude_ids,
            min_success_rate=min_success_rate,
            with_capacity=with_capacity,
        )

    def load_distribution(self) -> list[LoadEntry]:
        entries = [
            LoadEntry(
                agent=agent,
                load_score=agent_load_score(agent),
                utilization=round(agent.utilization, 2),
            )
            for agent in self.repository.find_agents()
        ]
        entries.sort(key=lambda entry: (-entry.load_score, entry.agent.name))
        return entries

    def system_health(self) -> RegistryHealth:
        counts = self.repository.count_agents_by_status()
        total = sum(counts.values()) - counts.get(AgentStatus.DEREGISTERED.value, 0)
        active = sum(counts.get(status.value, 0) for status in ACTIVE_AGENT_STATUSES)
        percentage = round(active / total * 100.0, 2) if total else 0.0
        return RegistryHealth(
            total=total,
            active=active,
            counts={status.value: counts.get(status.value, 0) for status in AgentStatus},
            health_percentage=percentage,
            load_distribution=self.load_distribution(),
            recent_events=self.repository.list_events(limit=self.settings.recent_events_limit),
        )

    def agent_performance(self, agent_id: str) -> AgentPerformance:
        agent = self.get(agent_id)
        return AgentPerformance(
            agent_id=agent.agent_id,
            name=agent.name,
            agent_type=agent.agent_type,
            status=agent.status,
            success_rate=agent.success_rate,
            total_tasks_completed=agent.total_tasks_completed,
            total_tasks_failed=agent.total_tasks_failed,
            average_completion_seconds=agent.average_completion_seconds,
            health_score=agent.health_score,
            load_score=agent_load_score(agent),
            utilization=round(agent.utilization, 2),
        )


def _normalize_tags(values: Iterable[str] | Mapping[str, Any], *, label: str) -> tuple[str, ...]:
    if isinstance(values, str):
        raise ValidationError(f"{label.capitalize()} set must be a collection, not a string.")
    if isinstance(values, Mapping):
        values = [key for key, enabled in values.items() if enabled]
    tags: list[str] = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Invalid {label}: {value!r}")
        tag = value.strip()
        if tag in tags:
            raise ValidationError(f"Duplicate {label}: {tag!r}")
        tags.append(tag)
    return tuple(tags)
