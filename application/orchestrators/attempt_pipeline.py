# application/orchestrators/attempt_pipeline.py
from dataclasses import replace
from typing import Callable, List, Optional

from application.orchestrators.agent_orchestrator import AgentOrchestrator
from application.services.complexity_classifier import ComplexityClassifier
from application.services.consensus_engine import ConsensusEngine
from application.services.feedback_learner import FeedbackLearner, build_feedback_event
from application.services.model_router import ModelRouter
from application.workflows.review_workflow import ReviewWorkflow
from domain.errors import PermanentProviderError, StorageError
from domain.models.agent_context import AgentAnalysis, AnalysisContext
from domain.models.approval_workflow import NotificationEvent
from domain.models.consensus import ConsensusDecision
from domain.models.message import ConversationTurn, InboundMessage, PreferenceSnapshot
from domain.models.queue_state import AttemptRecord, QueueItem, QueueStatus, ReleaseOutcome
from domain.models.routing import ComplexityAssessment, ModelTier, RoutingDecision, RoutingSource, TierOverride
from infrastructure.storage.base import QueueStore
from shared.config import OrchestratorConfig
from shared.logging import logger, log_attempt_outcome, log_token_usage

OUTCOME_COMPLETED = "completed"
OUTCOME_REQUIRES_REVIEW = "requires_review"
OUTCOME_RETRY_SCHEDULED = "retry_scheduled"
OUTCOME_FAILED = "failed"

TIER_HEADER = "X-Triage-Tier"

OverridePolicy = Callable[[QueueItem, InboundMessage], Optional[TierOverride]]
PreferenceSource = Callable[[QueueItem, InboundMessage], Optional[PreferenceSnapshot]]


def header_tier_override(item: QueueItem, message: InboundMessage) -> Optional[TierOverride]:
    """Honor an explicit tier requested through the X-Triage-Tier message header"""
    requested = next((value for key, value in message.headers.items()
                      if key.lower() == TIER_HEADER.lower()), None)
    if not requested:
        return None
    try:
        tier = ModelTier(requested.strip().lower())
    except ValueError:
        logger.warning("Ignoring unknown requested tier", queue_item_id=item.id, requested_tier=requested)
        return None
    return TierOverride(tier=tier, requested_by=message.sender, reason=f"{TIER_HEADER} header")


class AttemptPipeline:
    """
    One processing attempt for a claimed item:
    classify -> route -> analyze -> consensus -> complete or flag for review.
    """

    def __init__(self, store: QueueStore,
                 classifier: ComplexityClassifier,
                 router: ModelRouter,
                 orchestrator: AgentOrchestrator,
                 consensus: ConsensusEngine,
                 review_workflow: ReviewWorkflow,
                 learner: Optional[FeedbackLearner] = None,
                 notifier=None,
                 config: Optional[OrchestratorConfig] = None,
                 override_policy: Optional[OverridePolicy] = header_tier_override,
                 preference_source: Optional[PreferenceSource] = None):
        self.store = store
        self.classifier = classifier
        self.router = router
        self.orchestrator = orchestrator
        self.consensus = consensus
        self.review_workflow = review_workflow
        self.learner = learner
        self.notifier = notifier
        self.config = config or OrchestratorConfig()
        self.override_policy = override_policy
        self.preference_source = preference_source

    async def process(self, item: QueueItem, worker_id: str) -> str:
        """Run one attempt; StorageError propagates to the worker loop"""
        attempt_number = item.attempts + 1
        try:
            return await self._run_attempt(item, worker_id, attempt_number)
        except StorageError:
            raise
        except Exception as e:
            logger.exception("Unexpected error during attempt", queue_item_id=item.id, worker_id=worker_id)
            return await self._fail(item, worker_id, attempt_number, f"Unexpected error: {e}")

    async def _run_attempt(self, item: QueueItem, worker_id: str, attempt_number: int) -> str:
        message = await self.store.get_message(item.source_message_id)
        if message is None:
            return await self._fail(item, worker_id, attempt_number,
                                    f"Source message {item.source_message_id} not found")

        turns: List[ConversationTurn] = []
        if message.thread_id:
            turns = await self.store.get_thread_history(message.thread_id, before=message.received_at)

        preferences = self.preference_source(item, message) if self.preference_source else None
        assessment = self.classifier.score(message.text, turns, preferences)

        override = self.override_policy(item, message) if self.override_policy else None
        routing = self.router.select(
            assessment,
            override_request=override,
            estimated_consumers=self.orchestrator.consumer_count,
            queue_item_id=item.id,
        )

        context = AnalysisContext(
            queue_item_id=item.id,
            attempt_number=attempt_number,
            message=message,
            recent_turns=tuple(turns),
            external_systems=assessment.external_systems,
            max_tokens=self.config.analyzer_max_tokens,
            allow_tier_demotion=routing.source != RoutingSource.FORCED,
        )

        try:
            analyses = await self.orchestrator.run(item, routing, context)
        except PermanentProviderError as e:
            return await self._fail(item, worker_id, attempt_number, f"Permanent provider error: {e}",
                                    assessment=assessment, routing=routing, terminal=True)

        if not analyses:
            return await self._fail(item, worker_id, attempt_number, "No analyzer produced a result",
                                    assessment=assessment, routing=routing)

        decision = self.consensus.decide(analyses)
        routing = replace(routing, tokens_used=sum(a.tokens_used for a in analyses))
        log_token_usage(item.id, routing.model_tier.value, routing.estimated_tokens, routing.tokens_used)

        outcome = OUTCOME_REQUIRES_REVIEW if decision.requires_human_review else OUTCOME_COMPLETED
        await self.store.record_attempt(self._attempt_record(
            item, attempt_number, outcome, assessment, routing, analyses, decision))

        if decision.requires_human_review:
            await self.review_workflow.flag(item, decision)
        else:
            await self.store.release(item, ReleaseOutcome.COMPLETED)
            if self.notifier:
                self.notifier.notify(NotificationEvent.ATTEMPT_COMPLETED, {
                    "queue_item_id": item.id,
                    "support_level": decision.support_level,
                    "category": decision.final_verdict.category if decision.final_verdict else None,
                })

        # Reviewed attempts are learned from once, when the review is resolved
        if self.learner and outcome == OUTCOME_COMPLETED:
            self.learner.record(build_feedback_event(item.id, routing, outcome, analyses, decision))

        log_attempt_outcome(item.id, attempt_number, outcome, worker_id=worker_id,
                            support_level=decision.support_level)
        return outcome

    async def _fail(self, item: QueueItem, worker_id: str, attempt_number: int, error: str,
                    assessment: Optional[ComplexityAssessment] = None,
                    routing: Optional[RoutingDecision] = None,
                    terminal: bool = False) -> str:
        updated = await self.store.mark_failed(item, error, terminal=terminal)
        outcome = OUTCOME_FAILED if updated.status == QueueStatus.FAILED else OUTCOME_RETRY_SCHEDULED

        await self.store.record_attempt(self._attempt_record(
            item, attempt_number, outcome, assessment, routing, error=error))

        if self.notifier:
            self.notifier.notify(NotificationEvent.ATTEMPT_FAILED, {
                "queue_item_id": item.id,
                "attempts": updated.attempts,
                "terminal": outcome == OUTCOME_FAILED,
                "error": error,
            })

        log_attempt_outcome(item.id, attempt_number, outcome, worker_id=worker_id, error_message=error)
        return outcome

    @staticmethod
    def _attempt_record(item: QueueItem, attempt_number: int, outcome: str,
                        assessment: Optional[ComplexityAssessment] = None,
                        routing: Optional[RoutingDecision] = None,
                        analyses: Optional[List[AgentAnalysis]] = None,
                        decision: Optional[ConsensusDecision] = None,
                        error: Optional[str] = None) -> AttemptRecord:
        return AttemptRecord(
            queue_item_id=item.id,
            attempt_number=attempt_number,
            outcome=outcome,
            composite_score=assessment.composite_score if assessment else None,
            routing_decision=routing.to_record() if routing else None,
            analysis_summaries=tuple(a.summary().to_record() for a in analyses or ()),
            consensus=decision.to_record() if decision else None,
            error=error,
        )
