# domain/models/learning.py
from dataclasses import dataclass
from typing import Optional, Tuple
from datetime import datetime

from domain.models.routing import ModelTier, TaskShape


@dataclass(frozen=True)
class AnalyzerVote:
    """Compact per-analyzer input to the learner"""
    analyzer_kind: str
    category: str
    confidence: float
    model_tier: Optional[ModelTier] = None


@dataclass(frozen=True)
class FeedbackEvent:
    """One attempt outcome queued for the learning sink"""
    queue_item_id: str
    task_shape: TaskShape
    model_tier: ModelTier
    final_category: Optional[str]
    outcome: str
    overridden: bool
    votes: Tuple[AnalyzerVote, ...]
    recorded_at: datetime
    preferred_tier: Optional[ModelTier] = None
    # Pre-adjustment tier of an algorithmic routing; None for forced and override routings
    routing_tier: Optional[ModelTier] = None


@dataclass
class PerformanceStats:
    """Running statistics for one (analyzer kind, tier) pair"""
    samples: int = 0
    successes: int = 0
    overrides: int = 0
    confidence_sum: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.samples if self.samples else 0.0

    @property
    def average_confidence(self) -> float:
        return self.confidence_sum / self.samples if self.samples else 0.0

    @property
    def override_frequency(self) -> float:
        return self.overrides / self.samples if self.samples else 0.0


@dataclass
class ShapeTierStats:
    """Override tracking for one (task shape, tier) pair"""
    samples: int = 0
    overrides: int = 0
    preferred_higher: int = 0
    preferred_lower: int = 0

    @property
    def override_frequency(self) -> float:
        return self.overrides / self.samples if self.samples else 0.0
