"""Runtime configuration for the orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class RegistrySettings:
    """Agent lifecycle and health bookkeeping settings."""

    heartbeat_stale_seconds: int = 600
    default_max_concurrent_tasks: int = 5
    high_performer_floor: float = 80.0
    overload_threshold: float = 80.0
    failure_health_floor: float = 0.0
    recent_events_limit: int = 10


@dataclass(slots=True)
class QueueSettings:
    """Task admission, retry and retention settings."""

    default_priority: int = 5
    default_max_retries: int = 3
    retry_base_seconds: float = 30.0
    retry_max_seconds: float = 900.0
    dependency_recheck_seconds: float = 300.0
    wait_lookback_hours: int = 24
    cleanup_retention_days: int = 30


@dataclass(slots=True)
class VerificationSettings:
    """Quality scoring thresholds."""

    pass_threshold: float = 60.0
    consensus_tolerance: float = 20.0
    escalation_margin: float = 10.0
    default_reviewer_count: int = 3


@dataclass(slots=True)
class ConsensusSettings:
    """Multi-agent agreement settings."""

    required_agents: int = 3
    agreement_threshold: float = 0.7
    vote_majority: float = 0.5
    assistant_count: int = 2


@dataclass(slots=True)
class HealthSettings:
    """Health check scoring settings."""

    backlog_threshold: int = 100
    event_window_minutes: int = 60
    healthy_threshold: float = 80.0
    degraded_threshold: float = 50.0
    error_penalty: float = 5.0


@dataclass(slots=True)
class SupervisorSettings:
    """Periodic loop intervals and dispatcher sizing."""

    heartbeat_interval_seconds: float = 300.0
    queue_interval_seconds: float = 60.0
    optimizer_interval_seconds: float = 900.0
    deadline_interval_seconds: float = 900.0
    batch_size: int = 10
    dispatcher_workers: int = 4


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_hive.db")
    sqlite_busy_timeout_ms: int = 5_000
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    verification: VerificationSettings = field(default_factory=VerificationSettings)
    consensus: ConsensusSettings = field(default_factory=ConsensusSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_HIVE_DB_PATH", ".agent_hive.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_HIVE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            registry=RegistrySettings(
                heartbeat_stale_seconds=int(
                    os.getenv("AGENT_HIVE_HEARTBEAT_STALE_SECONDS", "600"),
                ),
                default_max_concurrent_tasks=int(
                    os.getenv("AGENT_HIVE_DEFAULT_MAX_CONCURRENT_TASKS", "5"),
                ),
                high_performer_floor=float(
                    os.getenv("AGENT_HIVE_HIGH_PERFORMER_FLOOR", "80.0"),
                ),
                overload_threshold=float(os.getenv("AGENT_HIVE_OVERLOAD_THRESHOLD", "80.0")),
                failure_health_floor=float(
                    os.getenv("AGENT_HIVE_FAILURE_HEALTH_FLOOR", "0.0"),
                ),
                recent_events_limit=int(os.getenv("AGENT_HIVE_RECENT_EVENTS_LIMIT", "10")),
            ),
            queue=QueueSettings(
                default_priority=int(os.getenv("AGENT_HIVE_DEFAULT_PRIORITY", "5")),
                default_max_retries=int(os.getenv("AGENT_HIVE_DEFAULT_MAX_RETRIES", "3")),
                retry_base_seconds=float(os.getenv("AGENT_HIVE_RETRY_BASE_SECONDS", "30")),
                retry_max_seconds=float(os.getenv("AGENT_HIVE_RETRY_MAX_SECONDS", "900")),
                dependency_recheck_seconds=float(
                    os.getenv("AGENT_HIVE_DEPENDENCY_RECHECK_SECONDS", "300"),
                ),
                wait_lookback_hours=int(os.getenv("AGENT_HIVE_WAIT_LOOKBACK_HOURS", "24")),
                cleanup_retention_days=int(
                    os.getenv("AGENT_HIVE_CLEANUP_RETENTION_DAYS", "30"),
                ),
            ),
            verification=VerificationSettings(
                pass_threshold=float(os.getenv("AGENT_HIVE_VERIFY_PASS_THRESHOLD", "60")),
                consensus_tolerance=float(
                    os.getenv("AGENT_HIVE_VERIFY_CONSENSUS_TOLERANCE", "20"),
                ),
                escalation_margin=float(
                    os.getenv("AGENT_HIVE_VERIFY_ESCALATION_MARGIN", "10"),
                ),
                default_reviewer_count=int(os.getenv("AGENT_HIVE_VERIFY_REVIEWERS", "3")),
            ),
            consensus=ConsensusSettings(
                required_agents=int(os.getenv("AGENT_HIVE_CONSENSUS_REQUIRED_AGENTS", "3")),
                agreement_threshold=float(
                    os.getenv("AGENT_HIVE_CONSENSUS_THRESHOLD", "0.7"),
                ),
                vote_majority=float(os.getenv("AGENT_HIVE_VOTE_MAJORITY", "0.5")),
                assistant_count=int(os.getenv("AGENT_HIVE_ASSISTANT_COUNT", "2")),
            ),
            health=HealthSettings(
                backlog_threshold=int(os.getenv("AGENT_HIVE_HEALTH_BACKLOG_THRESHOLD", "100")),
                event_window_minutes=int(
                    os.getenv("AGENT_HIVE_HEALTH_EVENT_WINDOW_MINUTES", "60"),
                ),
                healthy_threshold=float(os.getenv("AGENT_HIVE_HEALTHY_THRESHOLD", "80")),
                degraded_threshold=float(os.getenv("AGENT_HIVE_DEGRADED_THRESHOLD", "50")),
                error_penalty=float(os.getenv("AGENT_HIVE_HEALTH_ERROR_PENALTY", "5")),
            ),
            supervisor=SupervisorSettings(
                heartbeat_interval_seconds=float(
                    os.getenv("AGENT_HIVE_HEARTBEAT_INTERVAL_SECONDS", "300"),
                ),
                queue_interval_seconds=float(
                    os.getenv("AGENT_HIVE_QUEUE_INTERVAL_SECONDS", "60"),
                ),
                optimizer_interval_seconds=float(
                    os.getenv("AGENT_HIVE_OPTIMIZER_INTERVAL_SECONDS", "900"),
                ),
                deadline_interval_seconds=float(
                    os.getenv("AGENT_HIVE_DEADLINE_INTERVAL_SECONDS", "900"),
                ),
                batch_size=int(os.getenv("AGENT_HIVE_BATCH_SIZE", "10")),
                dispatcher_workers=int(os.getenv("AGENT_HIVE_DISPATCHER_WORKERS", "4")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_HIVE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.registry.heartbeat_stale_seconds <= 0:
            raise ValueError("AGENT_HIVE_HEARTBEAT_STALE_SECONDS must be > 0.")
        if self.registry.default_max_concurrent_tasks <= 0:
            raise ValueError("AGENT_HIVE_DEFAULT_MAX_CONCURRENT_TASKS must be > 0.")
        for name, value in (
            ("AGENT_HIVE_HIGH_PERFORMER_FLOOR", self.registry.high_performer_floor),
            ("AGENT_HIVE_OVERLOAD_THRESHOLD", self.registry.overload_threshold),
            ("AGENT_HIVE_FAILURE_HEALTH_FLOOR", self.registry.failure_health_floor),
            ("AGENT_HIVE_VERIFY_PASS_THRESHOLD", self.verification.pass_threshold),
        ):
            _require_percentage(name, value)
        if self.queue.default_max_retries < 0:
            raise ValueError("AGENT_HIVE_DEFAULT_MAX_RETRIES must be >= 0.")
        if self.queue.retry_base_seconds < 0 or self.queue.retry_max_seconds < 0:
            raise ValueError("Retry backoff seconds must be >= 0.")
        if self.queue.cleanup_retention_days < 0:
            raise ValueError("AGENT_HIVE_CLEANUP_RETENTION_DAYS must be >= 0.")
        if self.verification.consensus_tolerance < 0:
            raise ValueError("AGENT_HIVE_VERIFY_CONSENSUS_TOLERANCE must be >= 0.")
        if self.verification.escalation_margin < 0:
            raise ValueError("AGENT_HIVE_VERIFY_ESCALATION_MARGIN must be >= 0.")
        if self.consensus.required_agents <= 0:
            raise ValueError("AGENT_HIVE_CONSENSUS_REQUIRED_AGENTS must be > 0.")
        if not 0.0 < self.consensus.agreement_threshold <= 1.0:
            raise ValueError("AGENT_HIVE_CONSENSUS_THRESHOLD must be in (0, 1].")
        if not 0.0 < self.consensus.vote_majority <= 1.0:
            raise ValueError("AGENT_HIVE_VOTE_MAJORITY must be in (0, 1].")
        if self.health.degraded_threshold > self.health.healthy_threshold:
            raise ValueError(
                "AGENT_HIVE_DEGRADED_THRESHOLD must not exceed AGENT_HIVE_HEALTHY_THRESHOLD.",
            )
        if self.supervisor.batch_size <= 0:
            raise ValueError("AGENT_HIVE_BATCH_SIZE must be > 0.")
        if self.supervisor.dispatcher_workers <= 0:
            raise ValueError("AGENT_HIVE_DISPATCHER_WORKERS must be > 0.")


def _require_percentage(name: str, value: float) -> None:
    if not 0.0 <= value <= 100.0:
        raise ValueError(f"{name} must be within [0, 100], got {value!r}.")
