"""SQLModel ORM tables for orchestration state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class AgentRow(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agents_selection", "status", "agent_type", "current_task_count"),
    )

    agent_id: str = Field(primary_key=True)
    name: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    agent_type: str = Field(index=True)
    status: str = Field(index=True)
    health_score: float = Field(default=100.0)
    current_task_count: int = Field(default=0)
    max_concurrent_tasks: int = Field(default=5)
    stale: bool = Field(default=False)
    total_tasks_completed: int = Field(default=0)
    total_tasks_failed: int = Field(default=0)
    success_rate: float = Field(default=100.0)
    average_completion_seconds: float | None = None
    configuration_json: str | None = Field(default=None, sa_column=Column(Text))
    last_heartbeat_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    offline_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_assigned_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentTagRow(SQLModel, table=True):
    """Capability and specialization tags, one row per tag."""

    __tablename__ = "agent_tags"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("agent_id", "kind", "tag", name="uq_agent_tags_agent_kind_tag"),
        Index("idx_agent_tags_lookup", "kind", "tag"),
    )

    id: int | None = Field(default=None, primary_key=True)
    agent_id: str = Field(
        sa_column=Column(
            ForeignKey("agents.agent_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str
    tag: str


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "priority", "created_at"),)

    task_id: str = Field(primary_key=True)
    task_type: str = Field(index=True)
    input_json: str | None = Field(default=None, sa_column=Column(Text))
    priority: int = Field(default=5, index=True)
    status: str = Field(index=True)
    verification_status: str = Field(default="pending", index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    agent_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("agents.agent_id"), nullable=True, index=True),
    )
    assignment_strategy: str | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    blocked_reason: str | None = Field(default=None, index=True)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    deadline_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    run_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    assigned_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependencyRow(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    depends_on_task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )


class CollaborationRow(SQLModel, table=True):
    __tablename__ = "collaborations"  # type: ignore[bad-override]

    collaboration_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    collaboration_type: str = Field(index=True)
    status: str = Field(index=True)
    primary_agent_id: str | None = None
    participants_json: str | None = Field(default=None, sa_column=Column(Text))
    results_json: str | None = Field(default=None, sa_column=Column(Text))
    outcome_json: str | None = Field(default=None, sa_column=Column(Text))
    settings_json: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EventRow(SQLModel, table=True):
    __tablename__ = "orchestrator_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_orchestrator_events_time", "occurred_at", "severity"),)

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)
    severity: str
    agent_id: str | None = Field(default=None, index=True)
    task_id: str | None = Field(default=None, index=True)
    collaboration_id: str | None = None
    message: str = Field(sa_column=Column(Text, nullable=False))
    data_json: str | None = Field(default=None, sa_column=Column(Text))
    occurred_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
