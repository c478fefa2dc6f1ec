"""Operator-facing rendering of statistics and health snapshots."""

from __future__ import annotations

from agent_hive.orchestrator.engine import HealthReport, OrchestratorStatistics
from agent_hive.orchestrator.queue import QueueStatistics
from agent_hive.orchestrator.registry import LoadEntry


def render_statistics_lines(*, stats: OrchestratorStatistics, hours: int) -> list[str]:
    """Render orchestration statistics for CLI output."""

    agents = stats.agents
    tasks = stats.tasks
    return [
        f"Orchestration statistics (window={hours}h, since={stats.since.isoformat()})",
        (
            "Agents: "
            f"total={int(agents['total'])} active={int(agents['active'])} "
            f"average_success_rate={agents['average_success_rate']:.2f} "
            f"tasks_completed={int(agents['total_tasks_completed'])} "
            f"tasks_failed={int(agents['total_tasks_failed'])}"
        ),
        (
            "Tasks: "
            f"created={int(tasks['created'])} completed={int(tasks['completed'])} "
            f"failed={int(tasks['failed'])} dead_letter={int(tasks['dead_letter'])} "
            f"average_processing_seconds={tasks['average_processing_seconds']:.2f}"
        ),
        "Collaborations: " + (_fmt_key_value(stats.collaborations) or "none"),
        "Events: " + (_fmt_key_value(stats.events) or "none"),
    ]


def render_queue_lines(*, stats: QueueStatistics) -> list[str]:
    priorities = " ".join(
        f"p{priority}={count}" for priority, count in sorted(stats.by_priority.items(), reverse=True)
    )
    return [
        "Queue status: " + (_fmt_key_value(stats.by_status) or "empty"),
        (
            "Queue flags: "
            f"ready={stats.ready} blocked={stats.blocked} overdue={stats.overdue} "
            f"needs_verification={stats.needs_verification} "
            f"verification_failed={stats.verification_failed}"
        ),
        "Priority histogram: " + (priorities or "none"),
        f"Average wait: {stats.average_wait_seconds:.2f}s",
    ]


def render_health_lines(*, report: HealthReport) -> list[str]:
    """Render a health report: score, components, load and recommendations."""

    agents = report.agents
    lines = [
        f"Health: {report.status.value} score={report.score:.2f}",
        (
            "Components: "
            f"agents={report.agent_health_percentage:.2f}% "
            f"queue={report.queue_health_percentage:.2f}%"
        ),
        f"Agents: total={agents.total} active={agents.active} "
        + _fmt_key_value({key: value for key, value in agents.counts.items() if value}),
        *render_queue_lines(stats=report.queue),
        "Recent events: " + (_fmt_key_value(report.events) or "none"),
    ]
    if agents.load_distribution:
        lines.append("Load distribution:")
        lines.extend(_load_line(entry) for entry in agents.load_distribution)
    if report.recommendations:
        lines.append("Recommendations:")
        lines.extend(f"  - {recommendation}" for recommendation in report.recommendations)
    else:
        lines.append("Recommendations: none")
    return lines


def _load_line(entry: LoadEntry) -> str:
    agent = entry.agent
    return (
        f"  {agent.name} type={agent.agent_type} status={agent.status.value} "
        f"load={entry.load_score:.2f} utilization={entry.utilization:.2f}% "
        f"tasks={agent.current_task_count}/{agent.max_concurrent_tasks}"
    )


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
