from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner, Result

from agent_hive.main import agent_hive

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("CLI"),
]


def _invoke(runner: CliRunner, db_path: Path, *args: str) -> Result:
    group, command, *rest = args
    result = runner.invoke(agent_hive, [group, command, "--db-path", str(db_path), *rest])
    assert result.exit_code == 0, result.output
    return result


def _field(output: str, name: str) -> str:
    match = re.search(rf"{name}=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_register_enqueue_run_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    registered = _invoke(runner, db_path, "agents", "register", "--type", "analyzer", "--name", "a1")
    agent_id = _field(registered.output, "agent_id")
    assert "status=idle" in registered.output

    listed = _invoke(runner, db_path, "agents", "list")
    assert "Agents: 1" in listed.output
    assert "name=a1" in listed.output

    shown = _invoke(runner, db_path, "agents", "show", "--agent-id", agent_id)
    assert "Capabilities: statistical_analysis, anomaly_detection, data_profiling" in shown.output

    enqueued = _invoke(
        runner,
        db_path,
        "tasks",
        "enqueue",
        "--type",
        "analyzer",
        "--input",
        '{"values": [1, 2, 3]}',
        "--priority",
        "7",
    )
    task_id = _field(enqueued.output, "task_id")
    assert "status=pending priority=7" in enqueued.output

    ran = _invoke(runner, db_path, "run", "once")
    assert "Queue pass: assigned=1 considered=1 units_run=2 deferred=0" in ran.output
    assert f"{task_id} -> {agent_id}" in ran.output

    task = _invoke(runner, db_path, "tasks", "show", "--task-id", task_id)
    assert "Status: completed" in task.output
    assert "Verification: verified score=100.0" in task.output

    verified = _invoke(runner, db_path, "verify", "task", "--task-id", task_id)
    assert "passed=True" in verified.output
    assert "reason=already_verified" in verified.output

    stats = runner.invoke(agent_hive, ["stats", "--db-path", str(db_path)])
    assert stats.exit_code == 0, stats.output
    assert "Tasks: created=1 completed=1" in stats.output

    health = runner.invoke(agent_hive, ["health", "--db-path", str(db_path)])
    assert health.exit_code == 0, health.output
    assert "Health: healthy score=100.00" in health.output


def test_unknown_ids_are_reported_without_failing(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    assert "Agent not found: missing" in _invoke(
        runner, db_path, "agents", "show", "--agent-id", "missing"
    ).output
    assert "Agent not found: missing" in _invoke(
        runner, db_path, "agents", "heartbeat", "--agent-id", "missing"
    ).output
    assert "Task not found: missing" in _invoke(
        runner, db_path, "tasks", "show", "--task-id", "missing"
    ).output


def test_invalid_input_json_is_a_usage_error(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(
        agent_hive,
        [
            "tasks",
            "enqueue",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--type",
            "analyzer",
            "--input",
            "{bad",
        ],
    )

    assert result.exit_code == 1
    assert "Input is not valid JSON" in result.output


def test_offline_requeues_and_resubmit_requires_dead_letter(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    agent_id = _field(
        _invoke(runner, db_path, "agents", "register", "--type", "echo", "--name", "e1").output,
        "agent_id",
    )
    task_id = _field(
        _invoke(runner, db_path, "tasks", "enqueue", "--type", "echo").output,
        "task_id",
    )

    offline = _invoke(runner, db_path, "agents", "offline", "--agent-id", agent_id)
    again = _invoke(runner, db_path, "agents", "offline", "--agent-id", agent_id)
    resubmit = runner.invoke(
        agent_hive,
        ["tasks", "resubmit", "--db-path", str(db_path), "--task-id", task_id],
    )

    assert f"Agent offline: {agent_id} requeued=0" in offline.output
    assert f"Agent already inactive: {agent_id}" in again.output
    assert resubmit.exit_code == 1
    assert "Only dead-letter tasks" in resubmit.output
    assert "Dead-letter tasks: 0" in _invoke(runner, db_path, "tasks", "dead-letter").output


def test_consensus_create_and_execute(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    for index in range(3):
        _invoke(runner, db_path, "agents", "register", "--type", "analyzer", "--name", f"a{index}")

    created = _invoke(
        runner,
        db_path,
        "consensus",
        "create",
        "--type",
        "analyzer",
        "--input",
        '{"values": [4, 8]}',
        "--required-agents",
        "3",
    )
    collaboration_id = _field(created.output, "collaboration_id")

    executed = _invoke(
        runner,
        db_path,
        "consensus",
        "execute",
        "--collaboration-id",
        collaboration_id,
    )

    assert "Consensus reached=True agreement=3/3 (100.00%) agents=3" in executed.output
    assert '"mean": 6.0' in executed.output


def test_scale_registers_agents_with_default_capabilities(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    scaled = _invoke(runner, db_path, "agents", "scale", "--type", "validator", "--count", "2")
    listed = _invoke(runner, db_path, "agents", "list", "--type", "validator")

    assert "Scaled validator: previous=0 target=2 current=2 registered=2 offline=0" in scaled.output
    assert "Agents: 2" in listed.output
