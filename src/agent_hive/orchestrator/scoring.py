"""Pure scoring primitives shared by assignment, verification and consensus."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from agent_hive.orchestrator.models import AgentView, TaskView

_UTILIZATION_WEIGHT = 0.6
_FAILURE_WEIGHT = 0.25
_HEALTH_WEIGHT = 0.15

SPECIALIZATION_BONUS = 20.0
LOAD_PENALTY_FACTOR = 0.5
UNKNOWN_SUCCESS_RATE = 50.0

_QUALITY_PENALTIES = (("error", 20.0), ("failed", 20.0), ("invalid", 15.0))


def agent_load_score(agent: AgentView) -> float:
    """Load in [0, 100]: weighted utilization, failure rate and lost health.

    Grows with concurrent tasks and with the share of failed outcomes.
    """

    utilization = agent.current_task_count / max(agent.max_concurrent_tasks, 1)
    finished = agent.total_tasks_completed + agent.total_tasks_failed
    failure_rate = agent.total_tasks_failed / finished if finished else 0.0
    health_loss = 1.0 - max(0.0, min(agent.health_score, 100.0)) / 100.0
    score = 100.0 * (
        _UTILIZATION_WEIGHT * min(utilization, 1.0)
        + _FAILURE_WEIGHT * failure_rate
        + _HEALTH_WEIGHT * health_loss
    )
    return round(max(0.0, min(score, 100.0)), 2)


def capability_score(agent: AgentView, task_type: str) -> float:
    success_rate = agent.success_rate
    if agent.total_tasks_completed + agent.total_tasks_failed == 0:
        success_rate = UNKNOWN_SUCCESS_RATE
    bonus = SPECIALIZATION_BONUS if task_type in agent.specializations else 0.0
    return success_rate + bonus - LOAD_PENALTY_FACTOR * agent_load_score(agent)


def structural_checks(task: TaskView) -> dict[str, bool]:
    """The four structural checks applied to a completed task."""

    finished_at = task.completed_at or task.updated_at
    return {
        "has_output": not _is_blank(task.result),
        "no_error_flag": task.error_message is None and not has_error_marker(task.result),
        "not_overdue": task.deadline_at is None or finished_at <= task.deadline_at,
        "within_retry_budget": task.retry_count <= task.max_retries,
    }


def output_quality_score(result: Any) -> float:
    """Heuristic 0-100 score of an output payload."""

    if _is_blank(result):
        return 0.0
    score = 100.0
    if isinstance(result, Mapping):
        if "error" in result:
            score -= 10.0
        if "result" in result or "data" in result:
            score += 10.0
    text = canonical_output(result).lower()
    for marker, penalty in _QUALITY_PENALTIES:
        if marker in text:
            score -= penalty
    return max(0.0, min(score, 100.0))


def composite_quality_score(task: TaskView) -> tuple[float, dict[str, bool]]:
    checks = structural_checks(task)
    structural = sum(checks.values()) / len(checks) * 100.0
    score = 0.5 * structural + 0.5 * output_quality_score(task.result)
    return round(score, 2), checks


def has_error_marker(result: Any) -> bool:
    return isinstance(result, Mapping) and bool(result.get("error"))


def canonical_output(result: Any) -> str:
    """Stable string form used to compare outputs for equality."""

    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, sort_keys=True, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)


@dataclass(slots=True)
class ScoreSpread:
    mean: float
    spread: float
    scores: list[float]


def score_spread(scores: Sequence[float]) -> ScoreSpread:
    if not scores:
        return ScoreSpread(mean=0.0, spread=0.0, scores=[])
    values = [float(score) for score in scores]
    return ScoreSpread(
        mean=round(sum(values) / len(values), 2),
        spread=round(max(values) - min(values), 2),
        scores=values,
    )


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (Mapping, list, tuple, set)):
        return len(value) == 0
    return False
