"""Error taxonomy for orchestration operations."""

from __future__ import annotations


class OrchestrationError(Exception):
    """Base class for orchestration failures."""


class NotFoundError(OrchestrationError):
    """Unknown (or deregistered) agent, task or collaboration id."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateError(OrchestrationError):
    """Operation is illegal for the entity's current status."""


class InsufficientResourcesError(OrchestrationError):
    """Not enough eligible agents to carry out the operation."""

    def __init__(self, message: str, *, required: int, available: int) -> None:
        super().__init__(message)
        self.required = required
        self.available = available


class ValidationError(OrchestrationError):
    """Malformed input to a public operation."""


class ExecutionFailure(OrchestrationError):
    """Agent capability raised or returned an error marker."""
