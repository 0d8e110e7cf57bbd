# application/workflows/review_workflow.py
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from domain.errors import InvalidTransitionError, QueueItemNotFoundError
from domain.models.approval_workflow import NotificationEvent, ReviewTrigger
from domain.models.consensus import ConsensusDecision
from domain.models.learning import AnalyzerVote, FeedbackEvent
from domain.models.queue_state import (
    AttemptRecord, QueueItem, QueueStatus, ReviewFilter, ReviewOutcome,
)
from domain.models.routing import ModelTier, RoutingSource, TaskShape
from domain.models.verdict import Verdict, parse_verdict, verdict_to_dict
from infrastructure.storage.base import QueueStore
from shared.clock import utc_now
from shared.config import ReviewConfig
from shared.logging import logger, log_review_request

ReviewerAssignment = Callable[[QueueItem, ConsensusDecision], Optional[str]]


class ReviewWorkflow:
    """State machine for RequiresReview -> {Approved, Rejected}"""

    def __init__(self, store: QueueStore, notifier=None, learner=None,
                 config: Optional[ReviewConfig] = None,
                 assign_reviewer: Optional[ReviewerAssignment] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.notifier = notifier
        self.learner = learner
        self.config = config or ReviewConfig()
        self.assign_reviewer = assign_reviewer
        self.clock = clock

    @staticmethod
    def review_trigger(decision: ConsensusDecision) -> ReviewTrigger:
        if decision.ambiguous:
            return ReviewTrigger.AMBIGUOUS
        if decision.escalated_by:
            return ReviewTrigger.HARD_ESCALATION
        if decision.requires_human_review:
            return ReviewTrigger.LOW_SUPPORT
        return ReviewTrigger.NONE

    async def flag(self, item: QueueItem, decision: ConsensusDecision,
                   due_at: Optional[datetime] = None) -> QueueItem:
        """Move a claimed item to REQUIRES_REVIEW with an SLA deadline"""
        due = due_at or self.clock() + timedelta(hours=self.config.sla_hours)
        reviewer = self.assign_reviewer(item, decision) if self.assign_reviewer else None

        flagged = await self.store.flag_for_review(item, due, reviewer)
        trigger = self.review_trigger(decision)

        log_review_request(
            queue_item_id=item.id,
            support_level=decision.support_level,
            trigger=trigger.value,
            due_at=due.isoformat(),
            assigned_reviewer=reviewer,
        )
        if self.notifier:
            self.notifier.notify(NotificationEvent.REVIEW_REQUIRED, {
                "queue_item_id": item.id,
                "support_level": decision.support_level,
                "trigger": trigger.value,
                "due_at": due.isoformat(),
                "assigned_reviewer": reviewer,
                "warning_flags": list(decision.warning_flags),
            })
        return flagged

    async def resolve(self, item_id: str, reviewer_id: str, approve: bool,
                      verdict_override: Optional[Union[Verdict, Dict[str, Any]]] = None,
                      feedback: Optional[str] = None,
                      preferred_tier: Optional[ModelTier] = None) -> ReviewOutcome:
        item = await self.store.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(f"Queue item {item_id} not found")

        requested = QueueStatus.APPROVED if approve else QueueStatus.REJECTED
        if item.status != QueueStatus.REQUIRES_REVIEW:
            raise InvalidTransitionError(item_id, item.status.value, requested.value)

        override = self._coerce_verdict(verdict_override)
        last_attempt = await self._last_decided_attempt(item_id)
        consensus_verdict = None
        if last_attempt and last_attempt.consensus:
            consensus_verdict = last_attempt.consensus.get("final_verdict")

        override_dict = verdict_to_dict(override) if override is not None else None
        diverged = override_dict is not None and override_dict != consensus_verdict

        outcome = ReviewOutcome(
            queue_item_id=item_id,
            reviewer_id=reviewer_id,
            approved=approve,
            diverged=diverged,
            resolved_at=self.clock(),
            override_verdict=override_dict,
            feedback=feedback,
        )
        await self.store.resolve_review(item_id, outcome)

        logger.info("Review resolved",
                    queue_item_id=item_id,
                    reviewer_id=reviewer_id,
                    status=outcome.status.value,
                    diverged=diverged)

        if self.learner and last_attempt:
            final_category = override.category if override is not None else (
                consensus_verdict.get("category") if consensus_verdict else None)
            event = self._feedback_event(last_attempt, outcome, final_category, preferred_tier)
            if event is not None:
                self.learner.record(event)

        return outcome

    async def requeue_rejected(self, item_id: str, operator_id: str) -> QueueItem:
        """Explicit operator action: new item for the same message, referencing the rejected one"""
        item = await self.store.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(f"Queue item {item_id} not found")
        if item.status != QueueStatus.REJECTED:
            raise InvalidTransitionError(item_id, item.status.value, QueueStatus.PENDING.value)

        message = await self.store.get_message(item.source_message_id)
        if message is None:
            raise QueueItemNotFoundError(f"Source message {item.source_message_id} not found")

        corrective = await self.store.enqueue(message, item.priority, corrects_item_id=item.id)
        logger.info("Rejected item requeued",
                    queue_item_id=item_id,
                    corrective_item_id=corrective.id,
                    operator_id=operator_id)
        return corrective

    async def list_requiring_review(self, review_filter: Optional[ReviewFilter] = None) -> List[QueueItem]:
        return await self.store.list_requiring_review(review_filter)

    def is_overdue(self, item: QueueItem) -> bool:
        return item.is_overdue(self.clock())

    async def _last_decided_attempt(self, item_id: str) -> Optional[AttemptRecord]:
        attempts = await self.store.list_attempts(item_id)
        decided = [a for a in attempts if a.consensus is not None]
        return decided[-1] if decided else None

    @staticmethod
    def _coerce_verdict(verdict: Optional[Union[Verdict, Dict[str, Any]]]) -> Optional[Verdict]:
        if verdict is None or not isinstance(verdict, dict):
            return verdict
        return parse_verdict(verdict)

    @staticmethod
    def _feedback_event(attempt: AttemptRecord, outcome: ReviewOutcome,
                        final_category: Optional[str],
                        preferred_tier: Optional[ModelTier]) -> Optional[FeedbackEvent]:
        routing = attempt.routing_decision
        if not routing:
            return None
        model_tier = ModelTier(routing["model_tier"])
        overridden = outcome.diverged or not outcome.approved or (
            preferred_tier is not None and preferred_tier != model_tier)
        routing_tier = None
        if routing.get("source") == RoutingSource.ALGORITHMIC.value:
            routing_tier = ModelTier(routing.get("base_tier") or routing.get("algorithmic_tier")
                                     or routing["model_tier"])

        return FeedbackEvent(
            queue_item_id=outcome.queue_item_id,
            task_shape=TaskShape(routing.get("task_shape", TaskShape.GENERAL.value)),
            model_tier=model_tier,
            final_category=final_category,
            outcome=outcome.status.value,
            overridden=overridden,
            votes=tuple(
                AnalyzerVote(
                    analyzer_kind=summary["analyzer_kind"],
                    category=summary["category"],
                    confidence=summary["confidence"],
                )
                for summary in attempt.analysis_summaries
            ),
            recorded_at=outcome.resolved_at,
            preferred_tier=preferred_tier,
            routing_tier=routing_tier,
        )
