# tests/unit/application/services/test_model_router.py
import pytest

from application.services.complexity_classifier import DEFAULT_EXTERNAL_INDICATORS, ComplexityClassifier
from application.services.model_router import ModelRouter
from domain.models.routing import (
    ComplexityAssessment, ModelTier, RoutingSource, TaskShape, TierOverride,
)


def make_assessment(score: float, forced_tier=None, input_length: int = 100,
                    task_shape: TaskShape = TaskShape.GENERAL) -> ComplexityAssessment:
    return ComplexityAssessment(
        pattern_score=score,
        linguistic_score=score,
        context_score=score,
        composite_score=score,
        task_shape=task_shape,
        input_length=input_length,
        forced_tier=forced_tier,
    )


class StaticAdjustments:
    def __init__(self, value: float):
        self.value = value
        self.calls = []

    def adjustment_for(self, task_shape, tier):
        self.calls.append((task_shape, tier))
        return self.value


class TestModelRouter:
    """Test tier selection and cost estimation"""

    @pytest.mark.parametrize("score, tier", [
        (0.0, ModelTier.ECONOMY),
        (3.0, ModelTier.ECONOMY),
        (3.01, ModelTier.STANDARD),
        (7.0, ModelTier.STANDARD),
        (7.01, ModelTier.PREMIUM),
        (10.0, ModelTier.PREMIUM),
    ])
    def test_threshold_boundaries(self, score, tier):
        assert ModelRouter().tier_for_score(score) == tier

    def test_algorithmic_selection(self):
        decision = ModelRouter().select(make_assessment(5.0))

        assert decision.model_tier == ModelTier.STANDARD
        assert decision.source == RoutingSource.ALGORITHMIC
        assert decision.model_name == "gpt-4o"
        assert decision.tokens_used == 0

    def test_forced_tier_beats_score(self):
        """Live-data escalation wins over a low composite score"""
        decision = ModelRouter().select(make_assessment(1.0, forced_tier=ModelTier.PREMIUM))

        assert decision.model_tier == ModelTier.PREMIUM
        assert decision.source == RoutingSource.FORCED
        assert decision.algorithmic_tier == ModelTier.ECONOMY

    def test_override_beats_forced_tier(self):
        """An explicit human request wins over everything else"""
        override = TierOverride(tier=ModelTier.ECONOMY, requested_by="ops", reason="budget")

        decision = ModelRouter().select(make_assessment(9.0, forced_tier=ModelTier.PREMIUM),
                                        override_request=override)

        assert decision.model_tier == ModelTier.ECONOMY
        assert decision.source == RoutingSource.OVERRIDE
        assert any("requested by ops: budget" in line for line in decision.reasoning)

    def test_token_and_cost_estimate(self):
        """Tokens are input chars/4 times the tier multiplier plus per-analyzer overhead"""
        router = ModelRouter()

        decision = router.select(make_assessment(1.0, input_length=100), estimated_consumers=3)

        assert decision.estimated_tokens == 25 * 2 + 350 * 3
        assert decision.estimated_cost == pytest.approx(1100 / 1000 * 0.00015)

    def test_token_estimate_rounds_up(self):
        assert ModelRouter().estimate_tokens(101, ModelTier.PREMIUM, 0) == 26 * 8

    def test_learned_adjustment_moves_tier(self):
        """A positive adjustment nudges the score into the next tier"""
        adjustments = StaticAdjustments(2.0)
        router = ModelRouter(adjustments=adjustments)

        decision = router.select(make_assessment(2.5, task_shape=TaskShape.UPDATE))

        assert decision.model_tier == ModelTier.STANDARD
        assert decision.learned_adjustment == 2.0
        assert adjustments.calls == [(TaskShape.UPDATE, ModelTier.ECONOMY)]

    def test_adjusted_score_is_clamped(self):
        """Adjustments never push the effective score outside [0, 10]"""
        low = ModelRouter(adjustments=StaticAdjustments(-3.0)).select(make_assessment(1.0))
        high = ModelRouter(adjustments=StaticAdjustments(3.0)).select(make_assessment(9.5))

        assert low.model_tier == ModelTier.ECONOMY
        assert high.model_tier == ModelTier.PREMIUM
        assert any("effective score 10.00" in line for line in high.reasoning)

    def test_adjustment_does_not_affect_forced(self):
        decision = ModelRouter(adjustments=StaticAdjustments(-3.0)).select(
            make_assessment(9.0, forced_tier=ModelTier.PREMIUM))
        assert decision.model_tier == ModelTier.PREMIUM

    def test_demote(self):
        assert ModelRouter.demote(ModelTier.PREMIUM) == ModelTier.STANDARD
        assert ModelRouter.demote(ModelTier.ECONOMY) == ModelTier.ECONOMY

    def test_to_record_is_serializable(self):
        record = ModelRouter().select(make_assessment(8.0)).to_record()

        assert record["model_tier"] == "premium"
        assert record["source"] == "algorithmic"
        assert isinstance(record["created_at"], str)
        assert isinstance(record["reasoning"], list)


SHORT_TEMPLATES = ("{}?", "What about {}", "hi, {} please")


class TestExternalDataEscalation:
    """Any external-system indicator forces premium, whatever the score or learned bias"""

    @pytest.mark.parametrize("indicator", sorted(DEFAULT_EXTERNAL_INDICATORS))
    @pytest.mark.parametrize("template", SHORT_TEMPLATES)
    def test_indicator_forces_premium(self, indicator, template):
        assessment = ComplexityClassifier().score(template.format(indicator), [])
        router = ModelRouter(adjustments=StaticAdjustments(-3.0))

        decision = router.select(assessment)

        assert assessment.composite_score <= router.config.standard_max_score
        assert DEFAULT_EXTERNAL_INDICATORS[indicator] in assessment.external_systems
        assert decision.model_tier == ModelTier.PREMIUM
        assert decision.source == RoutingSource.FORCED
        assert decision.algorithmic_tier != ModelTier.PREMIUM

    def test_base_tier_recorded_before_adjustment(self):
        decision = ModelRouter(adjustments=StaticAdjustments(1.5)).select(make_assessment(2.5))

        assert decision.base_tier == ModelTier.ECONOMY
        assert decision.algorithmic_tier == ModelTier.STANDARD
        assert decision.to_record()["base_tier"] == "economy"
