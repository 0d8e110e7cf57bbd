# domain/models/routing.py
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional, Tuple
from datetime import datetime
from enum import Enum


class ModelTier(str, Enum):
    ECONOMY = "economy"
    STANDARD = "standard"
    PREMIUM = "premium"

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]

    def demoted(self) -> "ModelTier":
        """Next cheaper tier; ECONOMY has nothing below it"""
        if self == ModelTier.PREMIUM:
            return ModelTier.STANDARD
        return ModelTier.ECONOMY


_TIER_LEVELS = {
    ModelTier.ECONOMY: 0,
    ModelTier.STANDARD: 1,
    ModelTier.PREMIUM: 2,
}


class TaskShape(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SEARCH = "search"
    ANALYZE = "analyze"
    GENERAL = "general"


class RoutingSource(str, Enum):
    ALGORITHMIC = "algorithmic"
    FORCED = "forced"
    OVERRIDE = "override"


@dataclass(frozen=True)
class ComplexityAssessment:
    """Per-attempt complexity scores; forced_tier always wins over composite_score"""
    pattern_score: float
    linguistic_score: float
    context_score: float
    composite_score: float
    task_shape: TaskShape
    input_length: int
    forced_tier: Optional[ModelTier] = None
    external_systems: Tuple[str, ...] = ()
    reasoning: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TierOverride:
    """Explicit tier request from a human or a prior learning signal"""
    tier: ModelTier
    requested_by: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class RoutingDecision:
    """Immutable routing decision, created once per attempt"""
    decision_id: str
    model_tier: ModelTier
    model_name: str
    estimated_tokens: int
    estimated_cost: float
    reasoning: Tuple[str, ...]
    source: RoutingSource
    created_at: datetime
    tokens_used: int = 0
    learned_adjustment: float = 0.0
    task_shape: TaskShape = TaskShape.GENERAL
    algorithmic_tier: Optional[ModelTier] = None
    # Tier for the raw composite score, before any learned adjustment
    base_tier: Optional[ModelTier] = None

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["model_tier"] = self.model_tier.value
        record["source"] = self.source.value
        record["task_shape"] = self.task_shape.value
        record["algorithmic_tier"] = self.algorithmic_tier.value if self.algorithmic_tier else None
        record["base_tier"] = self.base_tier.value if self.base_tier else None
        record["reasoning"] = list(self.reasoning)
        record["created_at"] = self.created_at.isoformat()
        return record
