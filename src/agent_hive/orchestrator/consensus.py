"""Multi-agent agreement: consensus execution, voting and assisted solving."""

from __future__ import annotations

import dataclasses
import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agent_hive.config import ConsensusSettings, RegistrySettings
from agent_hive.orchestrator.backend import BackendRegistry
from agent_hive.orchestrator.errors import (
    ExecutionFailure,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from agent_hive.orchestrator.models import (
    AgentView,
    CollaborationCreate,
    CollaborationStatus,
    CollaborationType,
    CollaborationView,
    EventSeverity,
    EventWrite,
    TaskCreate,
    TaskStatus,
    TaskView,
    VerificationStatus,
)
from agent_hive.orchestrator.registry import AgentRegistry
from agent_hive.orchestrator.repository import OrchestratorRepository
from agent_hive.orchestrator.scoring import canonical_output, capability_score, has_error_marker
from agent_hive.storage.common import dump_json

logger = logging.getLogger(__name__)

CONSENSUS_BLOCK_REASON = "awaiting_consensus"
_DEFAULT_CONFIDENCE = 0.5


@dataclass(slots=True)
class ConsensusTask:
    task: TaskView
    collaboration: CollaborationView


@dataclass(slots=True)
class ConsensusOutcome:
    """Result of running one task independently on several agents."""

    collaboration_id: str
    task_id: str
    success: bool
    consensus_reached: bool = False
    consensus_result: Any = None
    agreement_count: int = 0
    total_agents: int = 0
    successful_agents: int = 0
    agreement_percentage: float = 0.0
    results: dict[str, dict[str, Any]] = field(default_factory=dict)
    error: str | None = None


@dataclass(slots=True)
class Vote:
    agent_id: str
    vote: str
    confidence: float
    reasoning: str | None = None


@dataclass(slots=True)
class VoteResult:
    collaboration_id: str
    task_id: str
    question: str | None
    votes: list[Vote]
    tally: dict[str, int]
    winner: str | None
    consensus_reached: bool
    confidence: float
    errors: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CollaborativeResult:
    collaboration_id: str | None
    task_id: str
    success: bool
    primary_agent_id: str | None = None
    combined: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class ConsensusMechanism:
    """Runs tasks on several agents and measures how much they agree."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        registry: AgentRegistry,
        settings: ConsensusSettings,
        registry_settings: RegistrySettings,
        backends: BackendRegistry,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.settings = settings
        self.registry_settings = registry_settings
        self.backends = backends

    def create_consensus_task(  # noqa: PLR0913
        self,
        task_type: str,
        input: Any = None,  # noqa: A002
        *,
        required_agents: int | None = None,
        threshold: float | None = None,
        priority: int = 5,
        metadata: Mapping[str, Any] | None = None,
    ) -> ConsensusTask:
        """Create a task reserved for consensus execution plus its collaboration.

        The task is blocked so regular queue processing never assigns it.
        """

        task_type = (task_type or "").strip()
        if not task_type:
            raise ValidationError("Task type is required.")
        required = self.settings.required_agents if required_agents is None else required_agents
        agreement = self.settings.agreement_threshold if threshold is None else threshold
        if isinstance(required, bool) or not isinstance(required, int) or required <= 0:
            raise ValidationError(f"required_agents must be a positive integer, got {required!r}.")
        if not 0 < agreement <= 1:
            raise ValidationError(f"Consensus threshold must be within (0, 1], got {agreement!r}.")

        task = self.repository.create_task(
            TaskCreate(
                task_type=task_type,
                input=input,
                priority=priority,
                metadata={
                    **dict(metadata or {}),
                    "requires_consensus": True,
                    "required_agents": required,
                    "consensus_threshold": agreement,
                },
                max_retries=0,
                blocked_reason=CONSENSUS_BLOCK_REASON,
            ),
        )
        collaboration = self.repository.create_collaboration(
            CollaborationCreate(
                task_id=task.task_id,
                collaboration_type=CollaborationType.CONSENSUS,
                settings={"required_agents": required, "consensus_threshold": agreement},
            ),
        )
        return ConsensusTask(task=task, collaboration=collaboration)

    def execute_consensus_task(self, collaboration_id: str) -> ConsensusOutcome:
        """Execute the task with each selected agent and accept the majority output."""

        collaboration = self._require_collaboration(collaboration_id)
        if collaboration.collaboration_type != CollaborationType.CONSENSUS:
            raise InvalidStateError(f"Collaboration {collaboration_id} is not a consensus")
        if collaboration.status != CollaborationStatus.PENDING:
            if collaboration.status == CollaborationStatus.IN_PROGRESS:
                raise InvalidStateError(f"Collaboration {collaboration_id} is already running")
            return _outcome_from_collaboration(collaboration)

        task = self._require_task(collaboration.task_id)
        if task.status != TaskStatus.PENDING:
            raise InvalidStateError(
                f"Consensus task {task.task_id} is {task.status.value}, expected pending",
            )
        required = int(collaboration.settings.get("required_agents", self.settings.required_agents))
        threshold = float(
            collaboration.settings.get("consensus_threshold", self.settings.agreement_threshold),
        )
        candidates = self.select_consensus_agents(task)
        if len(candidates) < required:
            return self._fail_insufficient(collaboration, task, required, len(candidates))
        agents = candidates[:required]

        if not self.repository.start_collaboration(
            collaboration_id,
            participants=[agent.agent_id for agent in agents],
        ):
            raise InvalidStateError(f"Collaboration {collaboration_id} was started concurrently")
        self._begin_processing(task)

        results: dict[str, dict[str, Any]] = {}
        for agent in agents:
            entry = self._run(task, agent)
            results[agent.agent_id] = entry
            self.repository.record_collaboration_result(
                collaboration_id,
                agent_id=agent.agent_id,
                result=entry,
            )

        successful = [entry["output"] for entry in results.values() if entry["success"]]
        groups = Counter(canonical_output(output) for output in successful)
        outcome = ConsensusOutcome(
            collaboration_id=collaboration_id,
            task_id=task.task_id,
            success=True,
            total_agents=len(agents),
            successful_agents=len(successful),
            results=results,
        )
        if groups:
            majority_key, majority_count = groups.most_common(1)[0]
            share = majority_count / len(successful)
            outcome.consensus_reached = share >= threshold
            outcome.consensus_result = next(
                output for output in successful if canonical_output(output) == majority_key
            )
            outcome.agreement_count = majority_count
            outcome.agreement_percentage = round(share * 100.0, 2)
        else:
            outcome.error = "no_successful_results"

        self._finish_task(task, outcome, threshold)
        self.repository.finish_collaboration(
            collaboration_id,
            status=CollaborationStatus.COMPLETED,
            outcome=_outcome_payload(outcome),
            message=(
                f"Consensus task {task.task_id} completed with {len(agents)} agents, "
                f"agreement {outcome.agreement_percentage}%"
            ),
        )
        return outcome

    def select_consensus_agents(self, task: TaskView) -> list[AgentView]:
        """High performers able to run the task, best capability match first."""

        agents = self.registry.eligible_agents(
            task.task_type,
            min_success_rate=self.registry_settings.high_performer_floor,
        )
        return sorted(
            agents,
            key=lambda agent: (-capability_score(agent, task.task_type), agent.name),
        )

    def conduct_vote(
        self,
        task_id: str,
        agent_ids: Iterable[str],
        question: str | None = None,
    ) -> VoteResult:
        """Ask each agent for a vote; the winner needs at least the majority share."""

        task = self._require_task(task_id)
        voters = [self.registry.get(agent_id) for agent_id in dict.fromkeys(agent_ids)]
        if not voters:
            raise ValidationError("At least one voting agent is required.")

        collaboration = self.repository.create_collaboration(
            CollaborationCreate(
                task_id=task_id,
                collaboration_type=CollaborationType.CONSENSUS,
                settings={"mode": "vote", "question": question},
            ),
        )
        collaboration_id = collaboration.collaboration_id
        self.repository.start_collaboration(
            collaboration_id,
            participants=[agent.agent_id for agent in voters],
        )
        vote_task = dataclasses.replace(task, input={"question": question, "data": task.input})

        votes: list[Vote] = []
        errors: dict[str, str] = {}
        for agent in voters:
            entry = self._run(vote_task, agent)
            if entry["success"]:
                vote = _extract_vote(agent.agent_id, entry["output"])
                votes.append(vote)
                entry = {"success": True, **dataclasses.asdict(vote)}
            else:
                errors[agent.agent_id] = entry["error"]
            self.repository.record_collaboration_result(
                collaboration_id,
                agent_id=agent.agent_id,
                result=entry,
            )

        tally = dict(Counter(vote.vote for vote in votes).most_common())
        winner = next(iter(tally), None)
        share = tally[winner] / len(votes) if winner is not None else 0.0
        consensus_reached = winner is not None and share >= self.settings.vote_majority
        confidence = (
            round(sum(vote.confidence for vote in votes) / len(votes), 2) if votes else 0.0
        )
        result = VoteResult(
            collaboration_id=collaboration_id,
            task_id=task_id,
            question=question,
            votes=votes,
            tally=tally,
            winner=winner,
            consensus_reached=consensus_reached,
            confidence=confidence,
            errors=errors,
        )
        self.repository.finish_collaboration(
            collaboration_id,
            status=CollaborationStatus.COMPLETED,
            outcome={
                "question": question,
                "tally": tally,
                "winner": winner,
                "consensus_reached": consensus_reached,
                "confidence": confidence,
                "errors": errors,
            },
            message=(
                f"Vote on task {task_id} conducted with {len(votes)} votes, "
                f"consensus: {consensus_reached}"
            ),
        )
        return result

    def collaborative_solve(
        self,
        task_id: str,
        collaboration_type: CollaborationType = CollaborationType.ASSISTANCE,
    ) -> CollaborativeResult:
        """Primary agent solves, assistants suggest; outputs are merged side by side."""

        task = self._require_task(task_id)
        primary = self._select_primary(task)
        if primary is None:
            self.repository.add_event(
                EventWrite(
                    event_type="collaboration_skipped",
                    message=f"No agent available to solve task {task_id}",
                    severity=EventSeverity.WARNING,
                    task_id=task_id,
                    data={"reason": "insufficient_agents"},
                ),
            )
            return CollaborativeResult(
                collaboration_id=None,
                task_id=task_id,
                success=False,
                error="insufficient_agents",
            )
        assistants = sorted(
            self.registry.eligible_agents(
                task.task_type,
                exclude_ids=[primary.agent_id],
                with_capacity=False,
            ),
            key=lambda agent: (-capability_score(agent, task.task_type), agent.name),
        )[: self.settings.assistant_count]

        collaboration = self.repository.create_collaboration(
            CollaborationCreate(
                task_id=task_id,
                collaboration_type=collaboration_type,
                primary_agent_id=primary.agent_id,
                settings={"assistant_count": self.settings.assistant_count},
            ),
        )
        collaboration_id = collaboration.collaboration_id
        self.repository.start_collaboration(
            collaboration_id,
            participants=[primary.agent_id, *(agent.agent_id for agent in assistants)],
        )

        primary_entry = self._run(task, primary)
        self.repository.record_collaboration_result(
            collaboration_id,
            agent_id=primary.agent_id,
            result={"role": "primary", **primary_entry},
        )
        suggestions: list[dict[str, Any]] = []
        for assistant in assistants:
            entry = self._run(task, assistant)
            self.repository.record_collaboration_result(
                collaboration_id,
                agent_id=assistant.agent_id,
                result={"role": "assistant", **entry},
            )
            if entry["success"]:
                suggestions.append(
                    {"agent_id": assistant.agent_id, "suggestion": entry["output"]},
                )

        combined = {
            "primary": primary_entry.get("output"),
            "suggestions": suggestions,
            "merged_at": self.repository.now().isoformat(),
        }
        success = bool(primary_entry["success"])
        self.repository.finish_collaboration(
            collaboration_id,
            status=CollaborationStatus.COMPLETED if success else CollaborationStatus.FAILED,
            outcome=combined if success else {**combined, "error": primary_entry["error"]},
            message=(
                f"Collaborative solve of task {task_id} finished with "
                f"{len(suggestions)} suggestion(s)"
            ),
            severity=EventSeverity.INFO if success else EventSeverity.WARNING,
        )
        return CollaborativeResult(
            collaboration_id=collaboration_id,
            task_id=task_id,
            success=success,
            primary_agent_id=primary.agent_id,
            combined=combined,
            error=None if success else primary_entry["error"],
        )

    def _run(self, task: TaskView, agent: AgentView) -> dict[str, Any]:
        """Execute on one agent; failures are captured per agent."""

        try:
            output = self.backends.for_agent(agent).execute(task, agent)
            if has_error_marker(output):
                raise ExecutionFailure(str(output["error"]))
        except Exception as error:  # noqa: BLE001
            logger.warning("Agent %s failed on task %s: %s", agent.name, task.task_id, error)
            return {"success": False, "error": str(error)}
        return {"success": True, "output": output}

    def _select_primary(self, task: TaskView) -> AgentView | None:
        if task.agent_id is not None:
            agent = self.repository.get_agent(task.agent_id)
            if agent is not None and agent.is_active:
                return agent
        candidates = sorted(
            self.registry.eligible_agents(task.task_type, with_capacity=False),
            key=lambda agent: (-capability_score(agent, task.task_type), agent.name),
        )
        return candidates[0] if candidates else None

    def _begin_processing(self, task: TaskView) -> None:
        now = self.repository.now()
        self.repository.transition_task(
            task.task_id,
            expected=TaskStatus.PENDING,
            target=TaskStatus.ASSIGNED,
            event_type="consensus_started",
            message=f"Consensus execution of task {task.task_id} started",
            values={"blocked_reason": None, "assignment_strategy": "consensus", "assigned_at": now},
        )
        self.repository.transition_task(
            task.task_id,
            expected=TaskStatus.ASSIGNED,
            target=TaskStatus.PROCESSING,
            event_type="task_started",
            message=f"Task {task.task_id} processing by consensus",
            values={"started_at": now},
        )

    def _finish_task(self, task: TaskView, outcome: ConsensusOutcome, threshold: float) -> None:
        now = self.repository.now()
        if outcome.consensus_reached:
            self.repository.transition_task(
                task.task_id,
                expected=TaskStatus.PROCESSING,
                target=TaskStatus.COMPLETED,
                event_type="task_completed",
                message=(
                    f"Task {task.task_id} completed by consensus "
                    f"({outcome.agreement_percentage}% agreement)"
                ),
                values={
                    "result_json": dump_json(outcome.consensus_result),
                    "completed_at": now,
                    "verification_status": VerificationStatus.VERIFIED.value,
                },
                metadata_updates={
                    "verification": {
                        "method": "consensus",
                        "passed": True,
                        "agreement_percentage": outcome.agreement_percentage,
                        "collaboration_id": outcome.collaboration_id,
                    },
                },
            )
            return
        self.repository.transition_task(
            task.task_id,
            expected=TaskStatus.PROCESSING,
            target=TaskStatus.FAILED,
            event_type="consensus_not_reached",
            message=(
                f"Consensus not reached for task {task.task_id}: "
                f"{outcome.agreement_percentage}% < {round(threshold * 100.0, 2)}%"
            ),
            severity=EventSeverity.WARNING,
            values={
                "error_message": outcome.error or "consensus_not_reached",
                "completed_at": now,
            },
            details=_outcome_payload(outcome),
        )

    def _fail_insufficient(
        self,
        collaboration: CollaborationView,
        task: TaskView,
        required: int,
        available: int,
    ) -> ConsensusOutcome:
        message = (
            f"Insufficient agents for consensus on task {task.task_id}: "
            f"required {required}, available {available}"
        )
        self.repository.finish_collaboration(
            collaboration.collaboration_id,
            status=CollaborationStatus.FAILED,
            outcome={
                "success": False,
                "error": "insufficient_agents",
                "required": required,
                "available": available,
            },
            message=message,
            severity=EventSeverity.WARNING,
        )
        if task.status == TaskStatus.PENDING:
            self.repository.transition_task(
                task.task_id,
                expected=TaskStatus.PENDING,
                target=TaskStatus.FAILED,
                event_type="consensus_failed",
                message=message,
                severity=EventSeverity.WARNING,
                values={"error_message": "insufficient_agents"},
            )
        return ConsensusOutcome(
            collaboration_id=collaboration.collaboration_id,
            task_id=task.task_id,
            success=False,
            total_agents=available,
            error="insufficient_agents",
        )

    def _require_task(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def _require_collaboration(self, collaboration_id: str) -> CollaborationView:
        collaboration = self.repository.get_collaboration(collaboration_id)
        if collaboration is None:
            raise NotFoundError("Collaboration", collaboration_id)
        return collaboration


def _extract_vote(agent_id: str, output: Any) -> Vote:
    if isinstance(output, Mapping) and "vote" in output:
        vote = str(output["vote"]).lower()
    else:
        vote = "yes" if output else "no"
    confidence = _DEFAULT_CONFIDENCE
    reasoning = None
    if isinstance(output, Mapping):
        raw_confidence = output.get("confidence", _DEFAULT_CONFIDENCE)
        if isinstance(raw_confidence, int | float) and not isinstance(raw_confidence, bool):
            confidence = float(raw_confidence)
        if output.get("reasoning") is not None:
            reasoning = str(output["reasoning"])
    return Vote(agent_id=agent_id, vote=vote, confidence=confidence, reasoning=reasoning)


def _outcome_payload(outcome: ConsensusOutcome) -> dict[str, Any]:
    return {
        "success": outcome.success,
        "consensus_reached": outcome.consensus_reached,
        "consensus_result": outcome.consensus_result,
        "agreement_count": outcome.agreement_count,
        "total_agents": outcome.total_agents,
        "successful_agents": outcome.successful_agents,
        "agreement_percentage": outcome.agreement_percentage,
        "error": outcome.error,
    }


def _outcome_from_collaboration(collaboration: CollaborationView) -> ConsensusOutcome:
    outcome = collaboration.outcome
    return ConsensusOutcome(
        collaboration_id=collaboration.collaboration_id,
        task_id=collaboration.task_id,
        success=bool(outcome.get("success")),
        consensus_reached=bool(outcome.get("consensus_reached")),
        consensus_result=outcome.get("consensus_result"),
        agreement_count=int(outcome.get("agreement_count", 0)),
        total_agents=int(outcome.get("total_agents", 0)),
        successful_agents=int(outcome.get("successful_agents", 0)),
        agreement_percentage=float(outcome.get("agreement_percentage", 0.0)),
        results=dict(collaboration.results),
        error=outcome.get("error"),
    )
