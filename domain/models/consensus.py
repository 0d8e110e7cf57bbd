# domain/models/consensus.py
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple

from domain.models.agent_context import AnalyzerKind
from domain.models.verdict import Verdict, verdict_to_dict


@dataclass(frozen=True)
class ConsensusDecision:
    """Immutable final output of one attempt"""
    support_level: float
    final_verdict: Optional[Verdict]
    requires_human_review: bool
    majority_kinds: Tuple[AnalyzerKind, ...] = ()
    dissenting_kinds: Tuple[AnalyzerKind, ...] = ()
    escalated_by: Tuple[AnalyzerKind, ...] = ()
    warning_flags: Tuple[str, ...] = ()
    group_weights: Tuple[Tuple[str, float], ...] = ()

    @property
    def ambiguous(self) -> bool:
        return "no_votes" in self.warning_flags or "unresolved_tie" in self.warning_flags

    def to_record(self) -> Dict[str, Any]:
        return {
            "support_level": self.support_level,
            "final_verdict": verdict_to_dict(self.final_verdict) if self.final_verdict else None,
            "requires_human_review": self.requires_human_review,
            "majority_kinds": [kind.value for kind in self.majority_kinds],
            "dissenting_kinds": [kind.value for kind in self.dissenting_kinds],
            "escalated_by": [kind.value for kind in self.escalated_by],
            "warning_flags": list(self.warning_flags),
            "group_weights": {category: weight for category, weight in self.group_weights},
        }
