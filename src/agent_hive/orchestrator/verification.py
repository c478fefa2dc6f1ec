"""Post-hoc quality scoring of completed task output and peer review."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agent_hive.config import VerificationSettings
from agent_hive.orchestrator.backend import REVIEW_TASK_TYPE, BackendRegistry
from agent_hive.orchestrator.dispatch import Dispatcher
from agent_hive.orchestrator.errors import (
    ExecutionFailure,
    InsufficientResourcesError,
    InvalidStateError,
    NotFoundError,
)
from agent_hive.orchestrator.models import (
    AgentOutcome,
    AgentView,
    CollaborationCreate,
    CollaborationStatus,
    CollaborationType,
    CollaborationView,
    EventSeverity,
    TaskStatus,
    TaskView,
    VerificationStatus,
)
from agent_hive.orchestrator.registry import AgentRegistry
from agent_hive.orchestrator.repository import OrchestratorRepository
from agent_hive.orchestrator.scoring import composite_quality_score, has_error_marker, score_spread

logger = logging.getLogger(__name__)

_OPEN_COLLABORATION_STATUSES = {CollaborationStatus.PENDING, CollaborationStatus.IN_PROGRESS}
_NEUTRAL_REVIEW_SCORE = 70.0


@dataclass(slots=True)
class VerificationResult:
    task_id: str
    passed: bool
    quality_score: float
    checks: dict[str, bool] = field(default_factory=dict)
    reason: str | None = None
    verifier_id: str | None = None
    escalated: bool = False
    collaboration_id: str | None = None
    applied: bool = True


@dataclass(slots=True)
class BatchVerification:
    results: list[VerificationResult]

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return sum(1 for result in self.results if result.passed)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.passed and not result.escalated)

    @property
    def escalated(self) -> int:
        return sum(1 for result in self.results if result.escalated)


@dataclass(slots=True)
class PeerReviewRequest:
    collaboration_id: str
    task_id: str
    reviewer_ids: list[str]


@dataclass(slots=True)
class ReviewConsensus:
    """Agreement of reviewer scores.

    ``scores_agree`` and ``meets_threshold`` are independent; consensus
    needs both.
    """

    collaboration_id: str
    task_id: str
    mean_score: float
    score_range: float
    scores: dict[str, float]
    scores_agree: bool
    meets_threshold: bool
    consensus_reached: bool

    def as_outcome(self) -> dict[str, Any]:
        return {
            "mean_score": self.mean_score,
            "score_range": self.score_range,
            "scores": self.scores,
            "scores_agree": self.scores_agree,
            "meets_threshold": self.meets_threshold,
            "consensus_reached": self.consensus_reached,
        }


class VerificationLayer:
    """Scores completed tasks and escalates borderline ones to peer review."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        registry: AgentRegistry,
        settings: VerificationSettings,
        dispatcher: Dispatcher,
        backends: BackendRegistry,
        failure_handler: Callable[[str, str], object] | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.settings = settings
        self.dispatcher = dispatcher
        self.backends = backends
        self.failure_handler = failure_handler

    def verify_task(self, task_id: str, verifier_id: str | None = None) -> VerificationResult:
        """Score a completed task and record the verdict on it."""

        task = self._require_task(task_id)
        if task.status != TaskStatus.COMPLETED:
            raise InvalidStateError(
                f"Only completed tasks can be verified; task {task_id} is {task.status.value}",
            )
        if task.verification_status != VerificationStatus.PENDING:
            return _cached_result(task)

        verifier = (
            self.registry.get(verifier_id) if verifier_id is not None else self.select_verifier(task)
        )
        score, checks = composite_quality_score(task)
        verification: dict[str, Any] = {
            "quality_score": score,
            "checks": checks,
            "threshold": self.settings.pass_threshold,
            "verifier_id": verifier.agent_id if verifier else None,
            "method": "automated",
            "verified_at": self.repository.now().isoformat(),
        }
        if score >= self.settings.pass_threshold:
            verification["passed"] = True
            applied = self.repository.update_verification(
                task_id,
                status=VerificationStatus.VERIFIED,
                verification=verification,
                event_type="task_verified",
                message=f"Task {task_id} verified with score {score}",
                agent_outcome=AgentOutcome(completed=1),
            )
            return VerificationResult(
                task_id=task_id,
                passed=True,
                quality_score=score,
                checks=checks,
                verifier_id=verification["verifier_id"],
                applied=applied,
            )

        if self._should_escalate(task, score):
            review = self._existing_review(task_id, open_only=True)
            if review is None:
                try:
                    request = self.request_peer_review(task_id)
                except InsufficientResourcesError as error:
                    logger.info("Escalation of task %s skipped: %s", task_id, error)
                else:
                    return _escalated_result(task_id, score, checks, request.collaboration_id)
            else:
                return _escalated_result(task_id, score, checks, review.collaboration_id)

        verification["passed"] = False
        return self._reject(task, score=score, checks=checks, verification=verification)

    def select_verifier(self, task: TaskView) -> AgentView | None:
        """Best active agent of the executor's type, other than the executor."""

        executor = self.repository.get_agent(task.agent_id) if task.agent_id else None
        exclude = [task.agent_id] if task.agent_id else []
        if executor is not None:
            candidates = self.repository.find_agents(
                agent_type=executor.agent_type,
                exclude_ids=exclude,
            )
        else:
            candidates = self.registry.eligible_agents(
                task.task_type,
                exclude_ids=exclude,
                with_capacity=False,
            )
        if not candidates:
            return None
        return sorted(candidates, key=lambda agent: (-agent.success_rate, agent.name))[0]

    def batch_verify(self, task_ids: Iterable[str]) -> BatchVerification:
        results: list[VerificationResult] = []
        for task_id in task_ids:
            try:
                results.append(self.verify_task(task_id))
            except (NotFoundError, InvalidStateError) as error:
                results.append(
                    VerificationResult(
                        task_id=task_id,
                        passed=False,
                        quality_score=0.0,
                        reason=str(error),
                        applied=False,
                    ),
                )
        return BatchVerification(results=results)

    def verify_pending_tasks(self, *, limit: int | None = None) -> BatchVerification:
        """Verify every completed task still awaiting a verdict."""

        tasks = self.repository.list_unverified_tasks(limit=limit)
        if tasks:
            logger.info("Verifying %d completed task(s)", len(tasks))
        return self.batch_verify(task.task_id for task in tasks)

    def request_peer_review(
        self,
        task_id: str,
        reviewer_count: int | None = None,
    ) -> PeerReviewRequest:
        """Open a review collaboration and dispatch one unit per reviewer."""

        count = self.settings.default_reviewer_count if reviewer_count is None else reviewer_count
        task = self._require_task(task_id)
        if task.status != TaskStatus.COMPLETED:
            raise InvalidStateError(
                f"Peer review needs a completed task; task {task_id} is {task.status.value}",
            )
        reviewers = sorted(
            self.registry.eligible_agents(
                task.task_type,
                exclude_ids=[task.agent_id] if task.agent_id else [],
                with_capacity=False,
            ),
            key=lambda agent: (-agent.success_rate, agent.name),
        )[: max(count, 0)]
        if not reviewers:
            raise InsufficientResourcesError(
                f"No reviewers available for task {task_id}",
                required=count,
                available=0,
            )

        reviewer_ids = [agent.agent_id for agent in reviewers]
        collaboration = self.repository.create_collaboration(
            CollaborationCreate(
                task_id=task_id,
                collaboration_type=CollaborationType.REVIEW,
                primary_agent_id=task.agent_id,
                settings={
                    "reviewer_count": count,
                    "tolerance": self.settings.consensus_tolerance,
                    "threshold": self.settings.pass_threshold,
                },
            ),
        )
        self.repository.start_collaboration(collaboration.collaboration_id, participants=reviewer_ids)
        for reviewer_id in reviewer_ids:
            self.dispatcher.submit(self.submit_review, collaboration.collaboration_id, reviewer_id)
        return PeerReviewRequest(
            collaboration_id=collaboration.collaboration_id,
            task_id=task_id,
            reviewer_ids=reviewer_ids,
        )

    def submit_review(self, collaboration_id: str, reviewer_id: str) -> bool:
        """Run one reviewer against the task output; idempotent per reviewer."""

        collaboration = self._require_collaboration(collaboration_id)
        if (
            collaboration.status != CollaborationStatus.IN_PROGRESS
            or reviewer_id in collaboration.results
        ):
            return False
        task = self._require_task(collaboration.task_id)
        reviewer = self.registry.get(reviewer_id)
        review_task = dataclasses.replace(
            task,
            task_type=REVIEW_TASK_TYPE,
            input={
                "original_task_type": task.task_type,
                "original_input": task.input,
                "original_result": task.result,
            },
        )
        try:
            output = self.backends.for_agent(reviewer).execute(review_task, reviewer)
            if has_error_marker(output):
                raise ExecutionFailure(str(output["error"]))
            entry: dict[str, Any] = {"quality_score": review_score(output), "output": output}
        except Exception as error:  # noqa: BLE001
            logger.warning("Reviewer %s failed on task %s: %s", reviewer_id, task.task_id, error)
            entry = {"quality_score": None, "error": str(error)}

        recorded = self.repository.record_collaboration_result(
            collaboration_id,
            agent_id=reviewer_id,
            result=entry,
        )
        if recorded and not self._require_collaboration(collaboration_id).pending_agent_ids:
            self.calculate_consensus(collaboration_id)
        return recorded

    def calculate_consensus(self, collaboration_id: str) -> ReviewConsensus:
        """Score agreement once every reviewer has reported."""

        collaboration = self._require_collaboration(collaboration_id)
        if collaboration.collaboration_type != CollaborationType.REVIEW:
            raise InvalidStateError(f"Collaboration {collaboration_id} is not a review")
        if collaboration.status not in _OPEN_COLLABORATION_STATUSES:
            return _consensus_from_outcome(collaboration)
        if collaboration.pending_agent_ids:
            raise InvalidStateError(
                f"Collaboration {collaboration_id} still waits for "
                f"{len(collaboration.pending_agent_ids)} reviewer(s)",
            )

        scores = {
            agent_id: float(result["quality_score"])
            for agent_id, result in collaboration.results.items()
            if isinstance(result, Mapping) and result.get("quality_score") is not None
        }
        spread = score_spread(list(scores.values()))
        scores_agree = bool(scores) and spread.spread <= self.settings.consensus_tolerance
        meets_threshold = bool(scores) and spread.mean >= self.settings.pass_threshold
        consensus = ReviewConsensus(
            collaboration_id=collaboration_id,
            task_id=collaboration.task_id,
            mean_score=spread.mean,
            score_range=spread.spread,
            scores=scores,
            scores_agree=scores_agree,
            meets_threshold=meets_threshold,
            consensus_reached=scores_agree and meets_threshold,
        )
        outcome = consensus.as_outcome()
        outcome["tolerance"] = self.settings.consensus_tolerance
        outcome["threshold"] = self.settings.pass_threshold

        if not consensus.consensus_reached:
            finished = self.repository.finish_collaboration(
                collaboration_id,
                status=CollaborationStatus.FAILED,
                outcome=outcome,
                message=(
                    f"Review consensus not reached for task {collaboration.task_id}: "
                    f"mean {spread.mean}, range {spread.spread}"
                ),
                severity=EventSeverity.WARNING,
            )
            if not finished:
                return _consensus_from_outcome(self._require_collaboration(collaboration_id))
            logger.warning(
                "Review disagreement on task %s: scores=%s mean=%s range=%s "
                "(tolerance %s, threshold %s)",
                collaboration.task_id,
                scores,
                spread.mean,
                spread.spread,
                self.settings.consensus_tolerance,
                self.settings.pass_threshold,
            )
            self._apply_automated_verdict(collaboration.task_id)
            return consensus

        finished = self.repository.finish_collaboration(
            collaboration_id,
            status=CollaborationStatus.COMPLETED,
            outcome=outcome,
            message=f"Review consensus reached for task {collaboration.task_id}",
        )
        if not finished:
            return _consensus_from_outcome(self._require_collaboration(collaboration_id))
        self.repository.update_verification(
            collaboration.task_id,
            status=VerificationStatus.VERIFIED,
            verification={
                **outcome,
                "quality_score": spread.mean,
                "passed": True,
                "method": "consensus",
                "collaboration_id": collaboration_id,
                "verified_at": self.repository.now().isoformat(),
            },
            event_type="task_verified",
            message=f"Task {collaboration.task_id} verified by consensus with score {spread.mean}",
            agent_outcome=AgentOutcome(completed=1),
        )
        return consensus

    def _apply_automated_verdict(self, task_id: str) -> None:
        task = self._require_task(task_id)
        if (
            task.status == TaskStatus.COMPLETED
            and task.verification_status == VerificationStatus.PENDING
        ):
            self.verify_task(task_id)

    def _should_escalate(self, task: TaskView, score: float) -> bool:
        margin = self.settings.escalation_margin
        if margin <= 0 or score < self.settings.pass_threshold - margin:
            return False
        # one review per task; once it has finished the automated verdict applies
        finished = self._existing_review(task.task_id, open_only=False)
        return finished is None or finished.status in _OPEN_COLLABORATION_STATUSES

    def _existing_review(self, task_id: str, *, open_only: bool) -> CollaborationView | None:
        reviews = [
            review
            for review in self.repository.list_collaborations(
                task_id=task_id,
                collaboration_type=CollaborationType.REVIEW,
            )
            if not open_only or review.status in _OPEN_COLLABORATION_STATUSES
        ]
        return reviews[-1] if reviews else None

    def _reject(
        self,
        task: TaskView,
        *,
        score: float,
        checks: dict[str, bool],
        verification: dict[str, Any],
    ) -> VerificationResult:
        final = not task.retries_left
        applied = self.repository.transition_task(
            task.task_id,
            expected=TaskStatus.COMPLETED,
            target=TaskStatus.FAILED,
            event_type="verification_failed",
            message=(
                f"Task {task.task_id} failed verification with score {score}"
                + (", retries exhausted" if final else ", will retry")
            ),
            severity=EventSeverity.ERROR if final else EventSeverity.WARNING,
            values={
                "verification_status": VerificationStatus.FAILED.value,
                "error_message": (
                    f"Verification failed: quality score {score} below "
                    f"{self.settings.pass_threshold}"
                ),
            },
            metadata_updates={"verification": verification},
            agent_outcome=AgentOutcome(failed=1),
            details={"quality_score": score, "checks": checks},
        )
        if applied and self.failure_handler is not None:
            self.failure_handler(task.task_id, "verification_failed")
        return VerificationResult(
            task_id=task.task_id,
            passed=False,
            quality_score=score,
            checks=checks,
            reason="quality_score_below_threshold",
            verifier_id=verification["verifier_id"],
            applied=applied,
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


def review_score(output: Any) -> float:
    """Quality score reported by a reviewer, with a neutral default."""

    if isinstance(output, Mapping):
        score = output.get("quality_score")
        if isinstance(score, int | float) and not isinstance(score, bool):
            return max(0.0, min(float(score), 100.0))
        valid = output.get("valid")
        if isinstance(valid, bool):
            return 100.0 if valid else 0.0
    return _NEUTRAL_REVIEW_SCORE


def _escalated_result(
    task_id: str,
    score: float,
    checks: dict[str, bool],
    collaboration_id: str,
) -> VerificationResult:
    return VerificationResult(
        task_id=task_id,
        passed=False,
        quality_score=score,
        checks=checks,
        reason="escalated_to_peer_review",
        escalated=True,
        collaboration_id=collaboration_id,
        applied=False,
    )


def _cached_result(task: TaskView) -> VerificationResult:
    verification = task.metadata.get("verification") or {}
    return VerificationResult(
        task_id=task.task_id,
        passed=task.verification_status == VerificationStatus.VERIFIED,
        quality_score=float(verification.get("quality_score", 0.0)),
        checks=dict(verification.get("checks") or {}),
        reason=f"already_{task.verification_status.value}",
        verifier_id=verification.get("verifier_id"),
        applied=False,
    )


def _consensus_from_outcome(collaboration: CollaborationView) -> ReviewConsensus:
    outcome = collaboration.outcome
    return ReviewConsensus(
        collaboration_id=collaboration.collaboration_id,
        task_id=collaboration.task_id,
        mean_score=float(outcome.get("mean_score", 0.0)),
        score_range=float(outcome.get("score_range", 0.0)),
        scores={key: float(value) for key, value in (outcome.get("scores") or {}).items()},
        scores_agree=bool(outcome.get("scores_agree")),
        meets_threshold=bool(outcome.get("meets_threshold")),
        consensus_reached=bool(outcome.get("consensus_reached")),
    )
