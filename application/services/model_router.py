# application/services/model_router.py
import math
import uuid
from typing import List, Optional

from domain.models.routing import (
    ComplexityAssessment, ModelTier, RoutingDecision, RoutingSource, TaskShape, TierOverride,
)
from shared.clock import utc_now
from shared.config import RouterConfig
from shared.logging import log_routing_decision

MIN_SCORE = 0.0
MAX_SCORE = 10.0


class ModelRouter:
    """Maps a complexity assessment to a model tier and a cost estimate"""

    def __init__(self, config: Optional[RouterConfig] = None, adjustments=None):
        self.config = config or RouterConfig()
        # Anything exposing adjustment_for(task_shape, tier) -> float, usually the FeedbackLearner
        self.adjustments = adjustments

    def tier_for_score(self, score: float) -> ModelTier:
        if score <= self.config.economy_max_score:
            return ModelTier.ECONOMY
        if score <= self.config.standard_max_score:
            return ModelTier.STANDARD
        return ModelTier.PREMIUM

    def select(self, assessment: ComplexityAssessment,
               override_request: Optional[TierOverride] = None,
               estimated_consumers: int = 1,
               queue_item_id: Optional[str] = None) -> RoutingDecision:
        reasoning: List[str] = list(assessment.reasoning)
        base_tier = self.tier_for_score(assessment.composite_score)
        adjustment = self._learned_adjustment(assessment.task_shape, base_tier)
        effective_score = min(MAX_SCORE, max(MIN_SCORE, assessment.composite_score + adjustment))
        algorithmic_tier = self.tier_for_score(effective_score)

        if adjustment:
            reasoning.append(f"Learned adjustment {adjustment:+.1f} for {assessment.task_shape.value} "
                             f"on {base_tier.value} (effective score {effective_score:.2f})")

        if override_request is not None:
            tier = override_request.tier
            source = RoutingSource.OVERRIDE
            reasoning.append(f"Tier {tier.value} requested by {override_request.requested_by}"
                             + (f": {override_request.reason}" if override_request.reason else ""))
        elif assessment.forced_tier is not None:
            tier = assessment.forced_tier
            source = RoutingSource.FORCED
            reasoning.append(f"Forced {tier.value}: answer depends on live external data")
        else:
            tier = algorithmic_tier
            source = RoutingSource.ALGORITHMIC
            reasoning.append(f"Selected {tier.value} for score {effective_score:.2f}")

        estimated_tokens = self.estimate_tokens(assessment.input_length, tier, estimated_consumers)
        estimated_cost = self.estimate_cost(estimated_tokens, tier)

        decision = RoutingDecision(
            decision_id=str(uuid.uuid4()),
            model_tier=tier,
            model_name=self.config.tier_models[tier],
            estimated_tokens=estimated_tokens,
            estimated_cost=estimated_cost,
            reasoning=tuple(reasoning),
            source=source,
            created_at=utc_now(),
            learned_adjustment=adjustment,
            task_shape=assessment.task_shape,
            algorithmic_tier=algorithmic_tier,
            base_tier=base_tier,
        )

        log_routing_decision(
            queue_item_id=queue_item_id or "",
            model_tier=tier.value,
            source=source.value,
            composite_score=assessment.composite_score,
            estimated_tokens=estimated_tokens,
            estimated_cost=estimated_cost,
        )
        return decision

    def estimate_tokens(self, input_length: int, tier: ModelTier, consumers: int) -> int:
        input_tokens = math.ceil(input_length / self.config.chars_per_token)
        multiplier = self.config.response_multipliers[tier]
        return input_tokens * multiplier + self.config.per_analyzer_overhead_tokens * max(consumers, 0)

    def estimate_cost(self, estimated_tokens: int, tier: ModelTier) -> float:
        return round(estimated_tokens / 1000 * self.config.cost_per_1k_tokens[tier], 6)

    @staticmethod
    def demote(tier: ModelTier) -> ModelTier:
        return tier.demoted()

    def _learned_adjustment(self, task_shape: TaskShape, tier: ModelTier) -> float:
        if self.adjustments is None:
            return 0.0
        return self.adjustments.adjustment_for(task_shape, tier)
