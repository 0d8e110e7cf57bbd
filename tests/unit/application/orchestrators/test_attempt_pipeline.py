# tests/unit/application/orchestrators/test_attempt_pipeline.py
import pytest
from datetime import datetime, timezone
from typing import List

from application.orchestrators.agent_orchestrator import AgentOrchestrator
from application.orchestrators.attempt_pipeline import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_REQUIRES_REVIEW,
    OUTCOME_RETRY_SCHEDULED,
    AttemptPipeline,
    header_tier_override,
)
from application.services.complexity_classifier import ComplexityClassifier
from application.services.consensus_engine import ConsensusEngine
from application.services.feedback_learner import FeedbackLearner
from application.services.model_router import ModelRouter
from application.workflows.review_workflow import ReviewWorkflow
from domain.errors import PermanentProviderError, StorageError
from domain.models.agent_context import AgentAnalysis, AnalyzerKind
from domain.models.approval_workflow import NotificationEvent
from domain.models.message import InboundMessage
from domain.models.queue_state import Priority, QueueStatus
from domain.models.routing import ModelTier, TaskShape
from domain.models.verdict import GeneralSupportVerdict, ProductInquiryVerdict, SalesVerdict
from infrastructure.notifications.notifier import Notifier
from infrastructure.storage.memory_queue_store import InMemoryQueueStore
from shared.config import OrchestratorConfig, QueueConfig

PRICE_QUESTION = "Is SKU-100 in stock and what is the price?"


class ScriptedAnalyzer:
    def __init__(self, kind: AnalyzerKind, verdict=None, confidence: float = 0.8, error: Exception = None):
        self.kind = kind
        self.verdict = verdict
        self.confidence = confidence
        self.error = error
        self.contexts = []
        self.tiers: List[ModelTier] = []

    async def analyze(self, context, model_tier, peers=None):
        self.contexts.append(context)
        self.tiers.append(model_tier)
        if self.error is not None:
            raise self.error
        return AgentAnalysis(self.kind, self.verdict, self.confidence, model_tier, 100, 5)


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__()
        self.events = []

    async def send(self, event, payload):
        self.events.append((event, payload))


class MessageLosingStore(InMemoryQueueStore):
    async def get_message(self, message_id):
        return None


class BrokenAttemptLogStore(InMemoryQueueStore):
    async def record_attempt(self, record):
        raise StorageError("disk full")


def make_message(body: str = PRICE_QUESTION, headers=None) -> InboundMessage:
    return InboundMessage(message_id="<m1@x>", sender="buyer@example.com", subject="", body=body,
                          received_at=datetime(2024, 5, 1, tzinfo=timezone.utc), headers=headers or {})


def agreeing_analyzers():
    return [
        ScriptedAnalyzer(AnalyzerKind.SUPPORT, ProductInquiryVerdict(products=["SKU-100"]), 0.9),
        ScriptedAnalyzer(AnalyzerKind.DISPUTE_BILLING, ProductInquiryVerdict(products=["SKU-100"]), 0.8),
        ScriptedAnalyzer(AnalyzerKind.SALES, SalesVerdict(), 0.4),
    ]


def build_pipeline(store, analyzers, notifier=None, learner=None, router=None):
    review = ReviewWorkflow(store, notifier=notifier, learner=learner)
    orchestrator = AgentOrchestrator(
        analyzers, OrchestratorConfig(analyzer_timeout_seconds=1.0, attempt_timeout_seconds=2.0))
    return AttemptPipeline(store, ComplexityClassifier(), router or ModelRouter(), orchestrator,
                           ConsensusEngine(), review, learner=learner, notifier=notifier)


async def claim(store, message=None):
    await store.enqueue(message or make_message(), Priority.MEDIUM)
    return await store.claim_next("w1", 60)


class TestAttemptPipeline:
    """Test one end-to-end processing attempt"""

    @pytest.mark.asyncio
    async def test_agreement_completes_item(self):
        store = InMemoryQueueStore()
        notifier = RecordingNotifier()
        learner = FeedbackLearner()
        analyzers = agreeing_analyzers()
        pipeline = build_pipeline(store, analyzers, notifier, learner)
        item = await claim(store)

        outcome = await pipeline.process(item, "w1")
        await notifier.drain()
        await learner.flush()

        assert outcome == OUTCOME_COMPLETED
        assert (await store.get(item.id)).status == QueueStatus.COMPLETED

        [attempt] = await store.list_attempts(item.id)
        assert attempt.outcome == OUTCOME_COMPLETED
        assert attempt.routing_decision["model_tier"] == "premium"
        assert attempt.routing_decision["source"] == "forced"
        assert attempt.routing_decision["tokens_used"] == 300
        assert attempt.consensus["support_level"] == 0.8095
        assert len(attempt.analysis_summaries) == 3

        assert [event for event, _ in notifier.events] == [NotificationEvent.ATTEMPT_COMPLETED]
        assert learner.stats_for("support", ModelTier.PREMIUM).samples == 1
        # Forced routings leave the shape adjustments alone
        assert learner.tier_stats == {}

    @pytest.mark.asyncio
    async def test_forced_routing_disables_demotion(self):
        store = InMemoryQueueStore()
        analyzers = agreeing_analyzers()
        item = await claim(store)

        await build_pipeline(store, analyzers).process(item, "w1")

        context = analyzers[0].contexts[0]
        assert context.allow_tier_demotion is False
        assert context.external_systems == ("erp",)
        assert analyzers[0].tiers == [ModelTier.PREMIUM]

    @pytest.mark.asyncio
    async def test_low_support_flags_for_review(self):
        store = InMemoryQueueStore()
        notifier = RecordingNotifier()
        analyzers = [
            ScriptedAnalyzer(AnalyzerKind.SUPPORT, GeneralSupportVerdict(), 0.5),
            ScriptedAnalyzer(AnalyzerKind.SALES, SalesVerdict(), 0.45),
        ]
        item = await claim(store, make_message("Hello, a question about my account"))

        outcome = await build_pipeline(store, analyzers, notifier).process(item, "w1")
        await notifier.drain()

        stored = await store.get(item.id)
        assert outcome == OUTCOME_REQUIRES_REVIEW
        assert stored.status == QueueStatus.REQUIRES_REVIEW
        assert stored.due_at is not None
        assert notifier.events[0][0] == NotificationEvent.REVIEW_REQUIRED
        assert notifier.events[0][1]["trigger"] == "low_support"

    @pytest.mark.asyncio
    async def test_reviewed_attempt_is_learned_once(self):
        """A flagged attempt reaches the learner only through its review resolution"""
        store = InMemoryQueueStore()
        learner = FeedbackLearner()
        analyzers = [
            ScriptedAnalyzer(AnalyzerKind.SUPPORT, GeneralSupportVerdict(), 0.5),
            ScriptedAnalyzer(AnalyzerKind.SALES, SalesVerdict(), 0.45),
        ]
        pipeline = build_pipeline(store, analyzers, learner=learner)
        item = await claim(store, make_message("Hello, a question about my account"))

        assert await pipeline.process(item, "w1") == OUTCOME_REQUIRES_REVIEW
        await learner.flush()
        assert learner.tier_stats == {}
        assert learner.analyzer_stats == {}

        await pipeline.review_workflow.resolve(item.id, "reviewer-1", approve=False)
        await learner.flush()

        [stats] = learner.tier_stats.values()
        assert stats.samples == 1
        assert stats.overrides == 1
        assert sum(s.samples for s in learner.analyzer_stats.values()) == 2

    @pytest.mark.asyncio
    async def test_permanent_provider_error_fails_without_retry(self):
        store = InMemoryQueueStore()
        analyzers = [ScriptedAnalyzer(AnalyzerKind.SUPPORT, error=PermanentProviderError("bad key"))]
        item = await claim(store)

        outcome = await build_pipeline(store, analyzers).process(item, "w1")

        stored = await store.get(item.id)
        assert outcome == OUTCOME_FAILED
        assert stored.status == QueueStatus.FAILED
        assert stored.attempts == 1
        assert stored.max_attempts > 1
        [attempt] = await store.list_attempts(item.id)
        assert "Permanent provider error" in attempt.error
        assert attempt.routing_decision is not None

    @pytest.mark.asyncio
    async def test_no_results_fails_attempt(self):
        store = InMemoryQueueStore()
        analyzers = [ScriptedAnalyzer(AnalyzerKind.SUPPORT, error=ValueError("garbage"))]
        item = await claim(store)

        outcome = await build_pipeline(store, analyzers).process(item, "w1")

        assert outcome == OUTCOME_RETRY_SCHEDULED
        assert (await store.get(item.id)).last_error == "No analyzer produced a result"

    @pytest.mark.asyncio
    async def test_last_attempt_is_terminal(self):
        store = InMemoryQueueStore(QueueConfig(max_attempts=1))
        notifier = RecordingNotifier()
        analyzers = [ScriptedAnalyzer(AnalyzerKind.SUPPORT, error=ValueError("garbage"))]
        item = await claim(store)

        outcome = await build_pipeline(store, analyzers, notifier).process(item, "w1")
        await notifier.drain()

        assert outcome == OUTCOME_FAILED
        assert (await store.get(item.id)).status == QueueStatus.FAILED
        event, payload = notifier.events[0]
        assert event == NotificationEvent.ATTEMPT_FAILED
        assert payload["terminal"] is True

    @pytest.mark.asyncio
    async def test_missing_message_fails_attempt(self):
        store = MessageLosingStore()
        item = await claim(store)

        outcome = await build_pipeline(store, agreeing_analyzers()).process(item, "w1")

        assert outcome == OUTCOME_RETRY_SCHEDULED
        assert "not found" in (await store.get(item.id)).last_error

    @pytest.mark.asyncio
    async def test_tier_header_overrides_forced_tier(self):
        store = InMemoryQueueStore()
        analyzers = agreeing_analyzers()
        item = await claim(store, make_message(headers={"x-triage-tier": "Economy"}))

        await build_pipeline(store, analyzers).process(item, "w1")

        [attempt] = await store.list_attempts(item.id)
        assert attempt.routing_decision["model_tier"] == "economy"
        assert attempt.routing_decision["source"] == "override"
        assert analyzers[0].contexts[0].allow_tier_demotion is True

    @pytest.mark.asyncio
    async def test_storage_errors_propagate(self):
        store = BrokenAttemptLogStore()
        item = await claim(store)

        with pytest.raises(StorageError):
            await build_pipeline(store, agreeing_analyzers()).process(item, "w1")

    @pytest.mark.asyncio
    async def test_unexpected_errors_fail_the_attempt(self):
        class BrokenRouter(ModelRouter):
            def select(self, *args, **kwargs):
                raise RuntimeError("router exploded")

        store = InMemoryQueueStore()
        item = await claim(store)

        outcome = await build_pipeline(store, agreeing_analyzers(), router=BrokenRouter()).process(item, "w1")

        assert outcome == OUTCOME_RETRY_SCHEDULED
        assert "router exploded" in (await store.get(item.id)).last_error


class TestHeaderTierOverride:
    """Test the X-Triage-Tier header policy"""

    @pytest.mark.asyncio
    async def test_valid_header(self):
        store = InMemoryQueueStore()
        item = await claim(store)
        override = header_tier_override(item, make_message(headers={"X-Triage-Tier": " premium "}))

        assert override.tier == ModelTier.PREMIUM
        assert override.requested_by == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_missing_or_unknown_header(self):
        store = InMemoryQueueStore()
        item = await claim(store)

        assert header_tier_override(item, make_message()) is None
        assert header_tier_override(item, make_message(headers={"X-Triage-Tier": "platinum"})) is None
