# application/services/consensus_engine.py
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from domain.models.agent_context import AgentAnalysis, AnalyzerKind
from domain.models.consensus import ConsensusDecision
from shared.config import ConsensusConfig

SUPPORT_PRECISION = 4

_KIND_ORDER = {kind: index for index, kind in enumerate(AnalyzerKind)}


def _sort_key(analysis: AgentAnalysis):
    return (_KIND_ORDER[analysis.analyzer_kind], analysis.verdict.category, -analysis.confidence)


class ConsensusEngine:
    """
    Confidence-weighted majority vote over analyzer verdicts.

    Pure and deterministic: inputs are sorted before aggregation so arrival
    order never changes the decision.
    """

    def __init__(self, config: Optional[ConsensusConfig] = None):
        self.config = config or ConsensusConfig()

    def decide(self, analyses: Sequence[AgentAnalysis]) -> ConsensusDecision:
        ordered = sorted(analyses, key=_sort_key)
        escalated_by = tuple(a.analyzer_kind for a in ordered if a.verdict.escalate)

        groups: Dict[str, List[AgentAnalysis]] = defaultdict(list)
        for analysis in ordered:
            groups[analysis.verdict.category].append(analysis)

        weights = {category: sum(a.confidence for a in members) for category, members in groups.items()}
        total_weight = sum(weights.values())
        group_weights = tuple(sorted((category, round(weight, SUPPORT_PRECISION))
                                     for category, weight in weights.items()))

        if not ordered or total_weight <= 0:
            return ConsensusDecision(
                support_level=0.0,
                final_verdict=None,
                requires_human_review=True,
                dissenting_kinds=tuple(a.analyzer_kind for a in ordered),
                escalated_by=escalated_by,
                warning_flags=("no_votes",),
                group_weights=group_weights,
            )

        warning_flags: List[str] = []
        top_weight = max(weights.values())
        leaders = sorted(category for category, weight in weights.items()
                         if round(weight, SUPPORT_PRECISION) == round(top_weight, SUPPORT_PRECISION))

        if len(leaders) == 1:
            winner = leaders[0]
        else:
            privileged = [category for category in leaders
                          if any(a.analyzer_kind.has_escalation_privilege for a in groups[category])]
            if len(privileged) == 1:
                winner = privileged[0]
                warning_flags.append("tie_broken")
            else:
                winner = (privileged or leaders)[0]
                warning_flags.append("unresolved_tie")

        support_level = round(weights[winner] / total_weight, SUPPORT_PRECISION)
        majority = groups[winner]
        final = max(majority, key=lambda a: (a.confidence, -_KIND_ORDER[a.analyzer_kind]))

        if support_level < self.config.review_threshold:
            warning_flags.append("low_consensus")
        if escalated_by:
            warning_flags.append("hard_escalation")

        requires_review = (
            support_level < self.config.review_threshold
            or bool(escalated_by)
            or "unresolved_tie" in warning_flags
        )

        return ConsensusDecision(
            support_level=support_level,
            final_verdict=final.verdict,
            requires_human_review=requires_review,
            majority_kinds=tuple(a.analyzer_kind for a in majority),
            dissenting_kinds=tuple(a.analyzer_kind for a in ordered if a.verdict.category != winner),
            escalated_by=escalated_by,
            warning_flags=tuple(warning_flags),
            group_weights=group_weights,
        )
