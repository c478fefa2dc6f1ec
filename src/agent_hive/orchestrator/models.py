"""Domain models for agents, tasks, collaborations and events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentStatus(str, Enum):
    """Agent lifecycle states."""

    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"
    FAILED = "failed"
    DEREGISTERED = "deregistered"


ACTIVE_AGENT_STATUSES = frozenset({AgentStatus.IDLE, AgentStatus.BUSY})


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


IN_FLIGHT_TASK_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.PROCESSING})

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.FAILED}),
    TaskStatus.ASSIGNED: frozenset(
        {TaskStatus.PROCESSING, TaskStatus.PENDING, TaskStatus.FAILED},
    ),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING},
    ),
    # completed -> failed only on verification rejection
    TaskStatus.COMPLETED: frozenset({TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.DEAD_LETTER}),
    TaskStatus.DEAD_LETTER: frozenset(),
}


def is_legal_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS[current]


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class CollaborationType(str, Enum):
    REVIEW = "review"
    CONSENSUS = "consensus"
    ASSISTANCE = "assistance"


class CollaborationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class EventSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class TaskSelectionStrategy(str, Enum):
    """How the next ready task is picked from the queue."""

    PRIORITY_FIRST = "priority_first"
    DEADLINE_FIRST = "deadline_first"
    DEPENDENCY_AWARE = "dependency_aware"


class AssignmentStrategy(str, Enum):
    """How an eligible agent is picked for a task."""

    LEAST_LOADED = "least_loaded"
    ROUND_ROBIN = "round_robin"
    CAPABILITY_MATCH = "capability_match"
    HIGH_PERFORMER = "high_performer"


class TagKind(str, Enum):
    CAPABILITY = "capability"
    SPECIALIZATION = "specialization"


class HeartbeatOutcome(str, Enum):
    RECORDED = "recorded"
    REACTIVATED = "reactivated"
    IGNORED = "ignored"


class AssignOutcome(str, Enum):
    ASSIGNED = "assigned"
    AGENT_UNAVAILABLE = "agent_unavailable"
    TASK_UNAVAILABLE = "task_unavailable"


@dataclass(slots=True)
class AgentCreate:
    """Input payload for agent registration."""

    agent_type: str
    name: str
    capabilities: tuple[str, ...]
    specializations: tuple[str, ...] = ()
    max_concurrent_tasks: int = 5
    configuration: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentView:
    """Readable agent view for services and CLI."""

    agent_id: str
    name: str
    agent_type: str
    status: AgentStatus
    capabilities: tuple[str, ...]
    specializations: tuple[str, ...]
    health_score: float
    current_task_count: int
    max_concurrent_tasks: int
    stale: bool
    total_tasks_completed: int
    total_tasks_failed: int
    success_rate: float
    average_completion_seconds: float | None
    configuration: dict[str, Any]
    last_heartbeat_at: datetime
    offline_at: datetime | None
    last_assigned_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_AGENT_STATUSES

    @property
    def has_capacity(self) -> bool:
        return self.is_active and self.current_task_count < self.max_concurrent_tasks

    @property
    def utilization(self) -> float:
        if self.max_concurrent_tasks <= 0:
            return 0.0
        return self.current_task_count / self.max_concurrent_tasks * 100.0

    def can_handle(self, task_type: str) -> bool:
        return task_type == self.agent_type or task_type in self.capabilities


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    task_type: str
    input: Any = None
    priority: int = 5
    deadline_at: datetime | None = None
    dependencies: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    max_retries: int = 3
    blocked_reason: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for services and CLI."""

    task_id: str
    task_type: str
    input: Any
    priority: int
    status: TaskStatus
    verification_status: VerificationStatus
    retry_count: int
    max_retries: int
    agent_id: str | None
    assignment_strategy: str | None
    result: Any
    error_message: str | None
    blocked_reason: str | None
    dependencies: tuple[str, ...]
    metadata: dict[str, Any]
    deadline_at: datetime | None
    run_after: datetime | None
    assigned_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def retries_left(self) -> bool:
        return self.retry_count < self.max_retries

    @property
    def processing_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def is_overdue(self, now: datetime) -> bool:
        return self.deadline_at is not None and self.deadline_at <= now


@dataclass(slots=True)
class CollaborationCreate:
    """Input payload for a multi-agent collaboration."""

    task_id: str
    collaboration_type: CollaborationType
    primary_agent_id: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CollaborationView:
    collaboration_id: str
    task_id: str
    collaboration_type: CollaborationType
    status: CollaborationStatus
    primary_agent_id: str | None
    participating_agent_ids: tuple[str, ...]
    results: dict[str, Any]
    outcome: dict[str, Any]
    settings: dict[str, Any]
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def pending_agent_ids(self) -> tuple[str, ...]:
        return tuple(
            agent_id for agent_id in self.participating_agent_ids if agent_id not in self.results
        )


@dataclass(slots=True)
class EventWrite:
    """Append-only audit record to persist."""

    event_type: str
    message: str
    severity: EventSeverity = EventSeverity.INFO
    agent_id: str | None = None
    task_id: str | None = None
    collaboration_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EventView:
    event_id: int
    event_type: str
    severity: EventSeverity
    agent_id: str | None
    task_id: str | None
    collaboration_id: str | None
    message: str
    data: dict[str, Any]
    occurred_at: datetime


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream and collaborations."""

    task: TaskView
    events: list[EventView]
    collaborations: list[CollaborationView]


@dataclass(slots=True)
class AgentDetails:
    agent: AgentView
    in_flight_task_ids: list[str]
    events: list[EventView]


@dataclass(slots=True)
class AgentOutcome:
    """Counter and health adjustments applied to the owning agent with a transition."""

    completed: int = 0
    failed: int = 0
    health_delta: float = 0.0
    completion_seconds: float | None = None


@dataclass(slots=True)
class OfflineResult:
    """Outcome of taking an agent out of service."""

    applied: bool
    requeued_task_ids: list[str] = field(default_factory=list)
