"""Built-in local agent capabilities."""

from __future__ import annotations

import statistics
from collections.abc import Mapping
from typing import Any

from agent_hive.orchestrator.backend.base import REVIEW_TASK_TYPE, BackendRegistry
from agent_hive.orchestrator.errors import ExecutionFailure
from agent_hive.orchestrator.models import AgentView, TaskView
from agent_hive.orchestrator.scoring import output_quality_score

DEFAULT_CAPABILITIES: dict[str, tuple[str, ...]] = {
    "analyzer": ("statistical_analysis", "anomaly_detection", "data_profiling"),
    "validator": ("data_validation", "rule_checking", "format_verification"),
    "transformer": ("data_transformation", "format_conversion", "data_enrichment"),
    "reporter": ("report_generation", "visualization", "pdf_export"),
    "integration": ("api_integration", "data_sync", "webhook_handling"),
}

_ANOMALY_Z_SCORE = 2.0
_REVIEW_PASS_SCORE = 60.0


def default_capabilities_for(agent_type: str) -> tuple[str, ...]:
    return DEFAULT_CAPABILITIES.get(agent_type, (agent_type,))


class BuiltinBackend:
    """Shared review behaviour; subclasses implement ``run``."""

    name = "builtin"

    def execute(self, task: TaskView, agent: AgentView) -> Any:
        if task.task_type == REVIEW_TASK_TYPE:
            return self.review(task)
        return self.run(task, agent)

    def run(self, task: TaskView, agent: AgentView) -> Any:
        raise NotImplementedError

    def review(self, task: TaskView) -> dict[str, Any]:
        payload = task.input if isinstance(task.input, Mapping) else {}
        score = output_quality_score(payload.get("original_result"))
        return {
            "valid": score >= _REVIEW_PASS_SCORE,
            "quality_score": score,
            "reviewer": self.name,
        }


class EchoBackend(BuiltinBackend):
    name = "echo"

    def run(self, task: TaskView, agent: AgentView) -> Any:
        return {"result": task.input, "agent": agent.name}


class AnalyzerBackend(BuiltinBackend):
    """Descriptive statistics and z-score anomalies over numeric input."""

    name = "analyzer"

    def run(self, task: TaskView, agent: AgentView) -> Any:
        values = _numeric_values(task.input)
        if not values:
            raise ExecutionFailure("Analyzer input has no numeric values")
        mean = statistics.fmean(values)
        stdev = statistics.pstdev(values) if len(values) > 1 else 0.0
        anomalies = [
            value for value in values if stdev and abs(value - mean) / stdev > _ANOMALY_Z_SCORE
        ]
        return {
            "result": {
                "count": len(values),
                "mean": round(mean, 4),
                "min": min(values),
                "max": max(values),
                "stdev": round(stdev, 4),
                "anomalies": anomalies,
            },
        }


class ValidatorBackend(BuiltinBackend):
    """Rule checks over a record; also answers yes/no questions for votes."""

    name = "validator"

    def run(self, task: TaskView, agent: AgentView) -> Any:
        payload = task.input if isinstance(task.input, Mapping) else {}
        if "question" in payload:
            return self._vote(payload)
        record = payload.get("data")
        rules = payload.get("rules") or {}
        if not isinstance(record, Mapping):
            raise ExecutionFailure("Validator input requires a 'data' mapping")
        violations = []
        for field_name, rule in rules.items():
            value = record.get(field_name)
            if rule == "required" and value in (None, ""):
                violations.append(f"{field_name}: missing")
            elif rule == "numeric" and not isinstance(value, int | float):
                violations.append(f"{field_name}: not numeric")
            elif rule == "string" and not isinstance(value, str):
                violations.append(f"{field_name}: not a string")
        return {"result": {"valid": not violations, "violations": violations}}

    def _vote(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        record = payload.get("data")
        approve = bool(record) if record is not None else True
        return {
            "vote": "yes" if approve else "no",
            "confidence": 0.8 if record is not None else 0.5,
            "reasoning": "data present" if approve else "no data supplied",
        }


class TransformerBackend(BuiltinBackend):
    """String and structure transformations."""

    name = "transformer"

    _OPERATIONS = ("uppercase", "lowercase", "strip", "flatten")

    def run(self, task: TaskView, agent: AgentView) -> Any:
        payload = task.input if isinstance(task.input, Mapping) else {"data": task.input}
        operation = payload.get("operation", "strip")
        if operation not in self._OPERATIONS:
            raise ExecutionFailure(f"Unsupported transformation: {operation!r}")
        return {"result": _transform(payload.get("data"), operation)}


def builtin_registry() -> BackendRegistry:
    """Registry wired with the built-in capabilities; unknown types echo."""

    return BackendRegistry(
        {
            "analyzer": AnalyzerBackend(),
            "validator": ValidatorBackend(),
            "transformer": TransformerBackend(),
        },
        default=EchoBackend(),
    )


def _numeric_values(payload: Any) -> list[float]:
    if isinstance(payload, Mapping):
        payload = payload.get("values", payload.get("data"))
    if not isinstance(payload, list | tuple):
        return []
    return [
        float(value)
        for value in payload
        if isinstance(value, int | float) and not isinstance(value, bool)
    ]


def _transform(value: Any, operation: str) -> Any:
    if isinstance(value, str):
        if operation == "uppercase":
            return value.upper()
        if operation == "lowercase":
            return value.lower()
        return value.strip()
    if isinstance(value, Mapping):
        if operation == "flatten":
            return _flatten(value)
        return {key: _transform(item, operation) for key, item in value.items()}
    if isinstance(value, list):
        return [_transform(item, operation) for item in value]
    return value


def _flatten(value: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, item in value.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(item, Mapping):
            flat.update(_flatten(item, name))
        else:
            flat[name] = item
    return flat
