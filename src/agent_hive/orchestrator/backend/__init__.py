"""Agent execution capabilities."""

from agent_hive.orchestrator.backend.base import REVIEW_TASK_TYPE, AgentBackend, BackendRegistry
from agent_hive.orchestrator.backend.builtin import (
    DEFAULT_CAPABILITIES,
    AnalyzerBackend,
    EchoBackend,
    TransformerBackend,
    ValidatorBackend,
    builtin_registry,
    default_capabilities_for,
)

__all__ = [
    "DEFAULT_CAPABILITIES",
    "REVIEW_TASK_TYPE",
    "AgentBackend",
    "AnalyzerBackend",
    "BackendRegistry",
    "EchoBackend",
    "TransformerBackend",
    "ValidatorBackend",
    "builtin_registry",
    "default_capabilities_for",
]
