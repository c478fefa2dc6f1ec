"""CLI entrypoint for agent-hive."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from agent_hive import __version__
from agent_hive.orchestrator.controllers import (
    AgentHiveCliController,
    AgentListCommand,
    AgentMutateCommand,
    AgentRegisterCommand,
    AgentScaleCommand,
    ConsensusCreateCommand,
    ConsensusExecuteCommand,
    HealthCommand,
    RunDaemonCommand,
    RunOnceCommand,
    StatsCommand,
    TaskEnqueueCommand,
    TaskListCommand,
    TaskMutateCommand,
)
from agent_hive.orchestrator.errors import OrchestrationError
from agent_hive.orchestrator.models import (
    AgentStatus,
    AssignmentStrategy,
    TaskSelectionStrategy,
    TaskStatus,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentHiveCliController()

_DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="agent-hive")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for orchestrator events on stderr.",
)
def agent_hive(log_level: str) -> None:
    """Agent pool orchestration CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_hive.group()
def agents() -> None:
    """Agent registry commands."""


@agents.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--type", "agent_type", required=True, help="Agent type, for example `analyzer`.")
@click.option("--name", required=True, help="Human-readable agent name.")
@click.option(
    "--capability",
    "capabilities",
    multiple=True,
    help="Capability tag. Can be repeated.",
)
@click.option(
    "--specialization",
    "specializations",
    multiple=True,
    help="Specialization tag. Can be repeated.",
)
@click.option(
    "--max-concurrent-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent task cap (defaults to AGENT_HIVE_DEFAULT_MAX_CONCURRENT_TASKS).",
)
def agents_register(  # noqa: PLR0913
    db_path: Path | None,
    agent_type: str,
    name: str,
    capabilities: tuple[str, ...],
    specializations: tuple[str, ...],
    max_concurrent_tasks: int | None,
) -> None:
    """Register a new idle agent.

    Without `--capability` the built-in capabilities of the agent type are used.
    """

    with _cli_errors():
        _emit_lines(
            CONTROLLER.register_agent(
                AgentRegisterCommand(
                    db_path=db_path,
                    agent_type=agent_type,
                    name=name,
                    capabilities=capabilities,
                    specializations=specializations,
                    max_concurrent_tasks=max_concurrent_tasks,
                ),
            ),
        )


@agents.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in AgentStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--type", "agent_type", default=None, help="Optional agent type filter.")
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def agents_list(
    db_path: Path | None,
    status: str | None,
    agent_type: str | None,
    limit: int,
) -> None:
    """List registered agents."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.list_agents(
                AgentListCommand(
                    db_path=db_path,
                    status=status,
                    agent_type=agent_type,
                    limit=limit,
                ),
            ),
        )


@agents.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--agent-id", required=True, help="Agent id.")
def agents_show(db_path: Path | None, agent_id: str) -> None:
    """Show agent details, load and recent events."""

    _emit_lines(CONTROLLER.show_agent(AgentMutateCommand(db_path=db_path, agent_id=agent_id)))


@agents.command("heartbeat")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--agent-id", required=True, help="Agent id.")
def agents_heartbeat(db_path: Path | None, agent_id: str) -> None:
    """Record a heartbeat; revives an offline agent."""

    _emit_lines(CONTROLLER.heartbeat(AgentMutateCommand(db_path=db_path, agent_id=agent_id)))


@agents.command("offline")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--agent-id", required=True, help="Agent id.")
def agents_offline(db_path: Path | None, agent_id: str) -> None:
    """Take an agent offline and requeue its in-flight tasks."""

    _emit_lines(CONTROLLER.mark_offline(AgentMutateCommand(db_path=db_path, agent_id=agent_id)))


@agents.command("deregister")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--agent-id", required=True, help="Agent id.")
def agents_deregister(db_path: Path | None, agent_id: str) -> None:
    """Remove an agent from service permanently."""

    _emit_lines(CONTROLLER.deregister(AgentMutateCommand(db_path=db_path, agent_id=agent_id)))


@agents.command("scale")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--type", "agent_type", required=True, help="Agent type to scale.")
@click.option("--count", "target_count", type=click.IntRange(min=0), required=True)
def agents_scale(db_path: Path | None, agent_type: str, target_count: int) -> None:
    """Register or take offline agents until the active count matches `--count`."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.scale(
                AgentScaleCommand(db_path=db_path, agent_type=agent_type, target_count=target_count),
            ),
        )


@agent_hive.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--type", "task_type", required=True, help="Task type.")
@click.option("--input", "input_json", default=None, help="Task input as JSON.")
@click.option("--priority", type=int, default=None, help="Higher runs first.")
@click.option(
    "--deadline-minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Deadline relative to now.",
)
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Task id that must complete first. Can be repeated.",
)
@click.option("--max-retries", type=click.IntRange(min=0), default=None)
def tasks_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    input_json: str | None,
    priority: int | None,
    deadline_minutes: int | None,
    dependencies: tuple[str, ...],
    max_retries: int | None,
) -> None:
    """Add a pending task to the queue; `run once` assigns it."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.enqueue(
                TaskEnqueueCommand(
                    db_path=db_path,
                    task_type=task_type,
                    input_json=input_json,
                    priority=priority,
                    deadline_minutes=deadline_minutes,
                    dependencies=dependencies,
                    max_retries=max_retries,
                ),
            ),
        )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--type", "task_type", default=None, help="Optional task type filter.")
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    task_type: str | None,
    limit: int,
) -> None:
    """List tasks, highest priority first."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.list_tasks(
                TaskListCommand(
                    db_path=db_path,
                    status=status,
                    task_type=task_type,
                    limit=limit,
                ),
            ),
        )


@tasks.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Show task details, collaborations and events."""

    _emit_lines(CONTROLLER.show_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@tasks.command("dead-letter")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def tasks_dead_letter(db_path: Path | None, limit: int) -> None:
    """List dead-letter tasks."""

    _emit_lines(
        CONTROLLER.dead_letter(
            TaskListCommand(db_path=db_path, status=None, task_type=None, limit=limit),
        ),
    )


@tasks.command("resubmit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Dead-letter task id.")
def tasks_resubmit(db_path: Path | None, task_id: str) -> None:
    """Enqueue a fresh copy of a dead-letter task."""

    with _cli_errors():
        _emit_lines(CONTROLLER.resubmit(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@agent_hive.group()
def run() -> None:
    """Queue processing commands."""


@run.command("once")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--batch-size", type=click.IntRange(min=1), default=None)
@click.option(
    "--task-strategy",
    type=click.Choice([strategy.value for strategy in TaskSelectionStrategy]),
    default=TaskSelectionStrategy.PRIORITY_FIRST.value,
    show_default=True,
)
@click.option(
    "--agent-strategy",
    type=click.Choice([strategy.value for strategy in AssignmentStrategy]),
    default=AssignmentStrategy.LEAST_LOADED.value,
    show_default=True,
)
def run_once(
    db_path: Path | None,
    batch_size: int | None,
    task_strategy: str,
    agent_strategy: str,
) -> None:
    """Assign ready tasks and execute them synchronously, including verification."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run_once(
                RunOnceCommand(
                    db_path=db_path,
                    batch_size=batch_size,
                    task_strategy=task_strategy,
                    agent_strategy=agent_strategy,
                ),
            ),
        )


@run.command("daemon")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def run_daemon(db_path: Path | None) -> None:
    """Run heartbeat, queue, optimizer and deadline loops until interrupted."""

    with _cli_errors():
        _emit_lines(CONTROLLER.run_daemon(RunDaemonCommand(db_path=db_path)))


@agent_hive.group()
def verify() -> None:
    """Result verification commands."""


@verify.command("task")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Completed task id.")
def verify_task(db_path: Path | None, task_id: str) -> None:
    """Verify one completed task."""

    with _cli_errors():
        _emit_lines(CONTROLLER.verify_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@verify.command("pending")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def verify_pending(db_path: Path | None) -> None:
    """Verify every completed task still awaiting a verdict."""

    with _cli_errors():
        _emit_lines(CONTROLLER.verify_pending(HealthCommand(db_path=db_path)))


@agent_hive.group()
def consensus() -> None:
    """Multi-agent consensus commands."""


@consensus.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--type", "task_type", required=True, help="Task type.")
@click.option("--input", "input_json", default=None, help="Task input as JSON.")
@click.option("--required-agents", type=click.IntRange(min=1), default=None)
@click.option(
    "--threshold",
    type=click.FloatRange(min=0.0, max=1.0, min_open=True),
    default=None,
    help="Agreement share required, in (0, 1].",
)
def consensus_create(
    db_path: Path | None,
    task_type: str,
    input_json: str | None,
    required_agents: int | None,
    threshold: float | None,
) -> None:
    """Create a consensus task and its collaboration."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.create_consensus(
                ConsensusCreateCommand(
                    db_path=db_path,
                    task_type=task_type,
                    input_json=input_json,
                    required_agents=required_agents,
                    threshold=threshold,
                ),
            ),
        )


@consensus.command("execute")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--collaboration-id", required=True, help="Consensus collaboration id.")
def consensus_execute(db_path: Path | None, collaboration_id: str) -> None:
    """Run the consensus task with each selected agent."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.execute_consensus(
                ConsensusExecuteCommand(db_path=db_path, collaboration_id=collaboration_id),
            ),
        )


@agent_hive.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
def stats(db_path: Path | None, hours: int) -> None:
    """Show orchestration statistics."""

    with _cli_errors():
        _emit_lines(CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours)))


@agent_hive.command("health")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def health(db_path: Path | None) -> None:
    """Show hive health and recommendations."""

    with _cli_errors():
        _emit_lines(CONTROLLER.health(HealthCommand(db_path=db_path)))


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (OrchestrationError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_hive()
