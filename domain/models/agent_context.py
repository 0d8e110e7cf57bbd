# domain/models/agent_context.py
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple
from datetime import datetime
from enum import Enum

from domain.models.message import ConversationTurn, InboundMessage
from domain.models.routing import ModelTier
from domain.models.verdict import Verdict, verdict_to_dict


class AnalyzerKind(str, Enum):
    SALES = "sales"
    SUPPORT = "support"
    DISPUTE_BILLING = "dispute_billing"
    RELATIONSHIP = "relationship"
    OPPORTUNITY = "opportunity"

    @property
    def has_escalation_privilege(self) -> bool:
        """Kinds that win consensus ties"""
        return self == AnalyzerKind.DISPUTE_BILLING


@dataclass(frozen=True)
class AnalysisContext:
    """Immutable input shared by every analyzer in one attempt"""
    queue_item_id: str
    attempt_number: int
    message: InboundMessage
    recent_turns: Tuple[ConversationTurn, ...] = ()
    external_systems: Tuple[str, ...] = ()
    max_tokens: int = 800
    allow_tier_demotion: bool = True


@dataclass(frozen=True)
class AgentAnalysis:
    """Immutable output of one analyzer for one attempt"""
    analyzer_kind: AnalyzerKind
    verdict: Verdict
    confidence: float
    model_tier: ModelTier
    tokens_used: int
    execution_time_ms: int
    consulted: Tuple[AnalyzerKind, ...] = ()
    rationale: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    def summary(self) -> "AnalysisSummary":
        return AnalysisSummary(
            analyzer_kind=self.analyzer_kind.value,
            category=self.verdict.category,
            confidence=self.confidence,
            escalate=self.verdict.escalate,
            tokens_used=self.tokens_used,
            execution_time_ms=self.execution_time_ms,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "analyzer_kind": self.analyzer_kind.value,
            "verdict": verdict_to_dict(self.verdict),
            "confidence": self.confidence,
            "model_tier": self.model_tier.value,
            "tokens_used": self.tokens_used,
            "consulted": [kind.value for kind in self.consulted],
        }


@dataclass(frozen=True)
class AnalysisSummary:
    """Compact audit form retained after consensus"""
    analyzer_kind: str
    category: str
    confidence: float
    escalate: bool
    tokens_used: int
    execution_time_ms: int

    def to_record(self) -> Dict[str, Any]:
        return {
            "analyzer_kind": self.analyzer_kind,
            "category": self.category,
            "confidence": self.confidence,
            "escalate": self.escalate,
            "tokens_used": self.tokens_used,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass(frozen=True)
class PeerRequest:
    """Bounded request from one analyzer for a peer's completed analysis"""
    requester: AnalyzerKind
    target: AnalyzerKind
    depth: int
    requested_at: datetime
