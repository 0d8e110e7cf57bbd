# infrastructure/agents/specialists.py
from typing import Dict, List, Sequence, Tuple, Type

from domain.models.agent_context import AgentAnalysis, AnalyzerKind
from domain.models.verdict import RelationshipVerdict, SalesVerdict, Verdict, VerdictCategory
from infrastructure.agents.base import BaseAnalyzer

COLD_RELATIONSHIP_WARMTH = 0.3


class SupportAnalyzer(BaseAnalyzer):
    kind = AnalyzerKind.SUPPORT


class SalesAnalyzer(BaseAnalyzer):
    """Consults the relationship analyzer's warmth before judging buying intent"""

    kind = AnalyzerKind.SALES
    consults = (AnalyzerKind.RELATIONSHIP,)
    guidance = "When a relationship analysis is provided, weigh its warmth signal."

    def refine(self, verdict: Verdict, confidence: float,
               consulted: List[AgentAnalysis]) -> Tuple[Verdict, float]:
        if not isinstance(verdict, SalesVerdict):
            return verdict, confidence
        for peer in consulted:
            peer_verdict = peer.verdict
            if isinstance(peer_verdict, RelationshipVerdict) and peer_verdict.warmth < COLD_RELATIONSHIP_WARMTH:
                return verdict.model_copy(update={"recommended_action":
                                                  "Repair the relationship before proposing an offer"}), confidence
        return verdict, confidence


class DisputeBillingAnalyzer(BaseAnalyzer):
    kind = AnalyzerKind.DISPUTE_BILLING

    def refine(self, verdict: Verdict, confidence: float,
               consulted: List[AgentAnalysis]) -> Tuple[Verdict, float]:
        if verdict.category == VerdictCategory.DISPUTE.value and not verdict.escalate:
            return verdict.model_copy(update={"escalate": True}), confidence
        return verdict, confidence


class RelationshipAnalyzer(BaseAnalyzer):
    kind = AnalyzerKind.RELATIONSHIP


class OpportunityAnalyzer(BaseAnalyzer):
    kind = AnalyzerKind.OPPORTUNITY


ANALYZER_CLASSES: Dict[AnalyzerKind, Type[BaseAnalyzer]] = {
    AnalyzerKind.SUPPORT: SupportAnalyzer,
    AnalyzerKind.SALES: SalesAnalyzer,
    AnalyzerKind.DISPUTE_BILLING: DisputeBillingAnalyzer,
    AnalyzerKind.RELATIONSHIP: RelationshipAnalyzer,
    AnalyzerKind.OPPORTUNITY: OpportunityAnalyzer,
}


def build_analyzers(kinds: Sequence[str], gateway) -> List[BaseAnalyzer]:
    """Instantiate the configured analyzer kinds in configuration order"""
    analyzers = []
    for name in kinds:
        kind = AnalyzerKind(name)
        analyzers.append(ANALYZER_CLASSES[kind](gateway))
    return analyzers
