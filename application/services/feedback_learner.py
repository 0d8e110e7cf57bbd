# application/services/feedback_learner.py
import asyncio
from typing import Dict, Optional, Sequence, Tuple

from domain.models.agent_context import AgentAnalysis
from domain.models.consensus import ConsensusDecision
from domain.models.learning import AnalyzerVote, FeedbackEvent, PerformanceStats, ShapeTierStats
from domain.models.routing import ModelTier, RoutingDecision, RoutingSource, TaskShape
from infrastructure.storage.performance_repository import InMemoryPerformanceRepository, PerformanceRepository
from shared.clock import utc_now
from shared.config import LearningConfig
from shared.logging import logger


def build_feedback_event(queue_item_id: str, routing: RoutingDecision, outcome: str,
                         analyses: Sequence[AgentAnalysis] = (),
                         decision: Optional[ConsensusDecision] = None,
                         overridden: bool = False,
                         final_category: Optional[str] = None,
                         preferred_tier: Optional[ModelTier] = None) -> FeedbackEvent:
    """Collapse one attempt (or its review) into a learner event"""
    if final_category is None and decision is not None and decision.final_verdict is not None:
        final_category = decision.final_verdict.category

    routing_tier = None
    if routing.source == RoutingSource.ALGORITHMIC:
        routing_tier = routing.base_tier or routing.algorithmic_tier or routing.model_tier

    return FeedbackEvent(
        queue_item_id=queue_item_id,
        task_shape=routing.task_shape,
        model_tier=routing.model_tier,
        final_category=final_category,
        outcome=outcome,
        overridden=overridden,
        votes=tuple(
            AnalyzerVote(
                analyzer_kind=a.analyzer_kind.value,
                category=a.verdict.category,
                confidence=a.confidence,
                model_tier=a.model_tier,
            )
            for a in analyses
        ),
        recorded_at=utc_now(),
        preferred_tier=preferred_tier,
        routing_tier=routing_tier,
    )


class FeedbackLearner:
    """
    Best-effort learning sink.

    record() only enqueues; a background task applies events to the running
    statistics and persists them. Nothing here can fail an attempt: a full
    queue drops the event and repository errors are logged.
    """

    def __init__(self, repository: Optional[PerformanceRepository] = None,
                 config: Optional[LearningConfig] = None):
        self.repository = repository or InMemoryPerformanceRepository()
        self.config = config or LearningConfig()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)
        self._task: Optional[asyncio.Task] = None
        self.analyzer_stats: Dict[Tuple[str, ModelTier], PerformanceStats] = {}
        self.tier_stats: Dict[Tuple[TaskShape, ModelTier], ShapeTierStats] = {}
        self.adjustments: Dict[Tuple[TaskShape, ModelTier], float] = {}
        self.dropped_events = 0

    async def start(self):
        """Warm caches from the repository and start the drain task"""
        try:
            self.analyzer_stats.update(await self.repository.load_analyzer_stats())
            for key, (stats, adjustment) in (await self.repository.load_tier_stats()).items():
                self.tier_stats[key] = stats
                self.adjustments[key] = adjustment
        except Exception as e:
            logger.warning("Failed to load learning state, starting empty", error=str(e))

        if self._task is None:
            self._task = asyncio.create_task(self._drain_loop(), name="feedback-learner")
        logger.info("Feedback learner started", adjustments=len(self.adjustments))

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()
        logger.info("Feedback learner stopped", dropped_events=self.dropped_events)

    def record(self, event: FeedbackEvent) -> bool:
        """Non-blocking enqueue; returns False when the event was dropped"""
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped_events += 1
            logger.warning("Learning queue full, dropping feedback event",
                           queue_item_id=event.queue_item_id,
                           dropped_events=self.dropped_events)
            return False

    async def flush(self):
        """Apply every queued event in the caller's task"""
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._apply(event)
            finally:
                self._queue.task_done()

    def adjustment_for(self, task_shape: TaskShape, tier: ModelTier) -> float:
        return self.adjustments.get((task_shape, tier), 0.0)

    def stats_for(self, analyzer_kind: str, tier: ModelTier) -> PerformanceStats:
        return self.analyzer_stats.get((analyzer_kind, tier), PerformanceStats())

    async def _drain_loop(self):
        while True:
            event = await self._queue.get()
            try:
                await self._apply(event)
            finally:
                self._queue.task_done()

    async def _apply(self, event: FeedbackEvent):
        for vote in event.votes:
            tier = vote.model_tier or event.model_tier
            key = (vote.analyzer_kind, tier)
            stats = self.analyzer_stats.setdefault(key, PerformanceStats())
            stats.samples += 1
            stats.confidence_sum += vote.confidence
            if event.overridden:
                stats.overrides += 1
            elif vote.category == event.final_category:
                stats.successes += 1
            await self._persist(self.repository.save_analyzer_stats(vote.analyzer_kind, tier, stats),
                                event.queue_item_id)

        # Keyed like the router looks it up: (shape, tier of the unadjusted score)
        if event.routing_tier is None:
            return
        shape_key = (event.task_shape, event.routing_tier)
        shape_stats = self.tier_stats.setdefault(shape_key, ShapeTierStats())
        shape_stats.samples += 1
        if event.overridden:
            shape_stats.overrides += 1
            preferred = event.preferred_tier
            # A divergence without an explicit tier reads as "the model was not good enough"
            if preferred is None and event.model_tier != ModelTier.PREMIUM:
                shape_stats.preferred_higher += 1
            elif preferred is not None and preferred.level > event.model_tier.level:
                shape_stats.preferred_higher += 1
            elif preferred is not None and preferred.level < event.model_tier.level:
                shape_stats.preferred_lower += 1

        adjustment = self.compute_adjustment(shape_stats)
        previous = self.adjustments.get(shape_key, 0.0)
        self.adjustments[shape_key] = adjustment
        if adjustment != previous:
            logger.info("Routing adjustment changed",
                        task_shape=event.task_shape.value,
                        routing_tier=event.routing_tier.value,
                        previous=previous,
                        adjustment=adjustment,
                        override_frequency=round(shape_stats.override_frequency, 4))
        await self._persist(
            self.repository.save_tier_adjustment(event.task_shape, event.routing_tier, shape_stats, adjustment),
            event.queue_item_id,
        )

    def compute_adjustment(self, stats: ShapeTierStats) -> float:
        """Signed composite-score bias; zero until overrides are frequent enough"""
        if stats.samples < self.config.min_samples:
            return 0.0
        frequency = stats.override_frequency
        if frequency <= self.config.override_threshold:
            return 0.0
        if stats.preferred_higher == stats.preferred_lower:
            return 0.0

        direction = 1.0 if stats.preferred_higher > stats.preferred_lower else -1.0
        magnitude = self.config.adjustment_step
        if frequency > 2 * self.config.override_threshold:
            magnitude *= 2
        return direction * min(magnitude, self.config.max_adjustment)

    async def _persist(self, write, queue_item_id: str):
        try:
            await write
        except Exception as e:
            logger.error("Failed to persist learning statistics",
                         queue_item_id=queue_item_id, error=str(e))
