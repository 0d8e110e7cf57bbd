# infrastructure/agents/base.py
import json
from abc import ABC
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import ValidationError

from domain.errors import MalformedAnalysisError
from domain.models.agent_context import AgentAnalysis, AnalysisContext, AnalyzerKind
from domain.models.routing import ModelTier
from domain.models.verdict import Verdict, parse_verdict
from infrastructure.agents.prompts import build_prompt
from shared.clock import utc_now
from shared.logging import log_analyzer_execution


def parse_analysis_payload(text: str) -> Tuple[Verdict, float, Optional[str]]:
    """Extract (verdict, confidence, rationale) from raw model output"""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise MalformedAnalysisError("Model output contains no JSON object")

    try:
        payload = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise MalformedAnalysisError(f"Model output is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedAnalysisError("Model output is not a JSON object")

    try:
        confidence = float(payload.pop("confidence", 0.5))
    except (TypeError, ValueError) as e:
        raise MalformedAnalysisError("Confidence is not a number") from e
    confidence = min(1.0, max(0.0, confidence))
    rationale = payload.pop("rationale", None)

    try:
        verdict = parse_verdict(payload)
    except ValidationError as e:
        raise MalformedAnalysisError(f"Verdict failed validation: {e.error_count()} error(s)") from e

    return verdict, confidence, rationale


class BaseAnalyzer(ABC):
    """
    One specialised perspective over an inbound message.

    Subclasses set ``kind`` and may list peer kinds in ``consults``; peers are
    read through the orchestrator's exchange and never invoked directly.
    """

    kind: AnalyzerKind
    consults: Tuple[AnalyzerKind, ...] = ()
    guidance: Optional[str] = None

    def __init__(self, gateway):
        self.gateway = gateway

    async def analyze(self, context: AnalysisContext, model_tier: ModelTier, peers=None) -> AgentAnalysis:
        start_time = utc_now()
        consulted = await self._consult(peers)

        try:
            prompt = build_prompt(self.kind, context, consulted, self.guidance)
            response = await self.gateway.generate(
                prompt, model_tier, context.max_tokens,
                allow_demotion=context.allow_tier_demotion,
            )
            verdict, confidence, rationale = parse_analysis_payload(response.text)
            verdict, confidence = self.refine(verdict, confidence, consulted)
        except Exception as e:
            log_analyzer_execution(
                analyzer_kind=self.kind.value,
                queue_item_id=context.queue_item_id,
                execution_time_ms=self._elapsed_ms(start_time),
                tokens_used=0,
                success=False,
                model_tier=model_tier.value,
                error_message=str(e),
            )
            raise

        execution_time = self._elapsed_ms(start_time)
        log_analyzer_execution(
            analyzer_kind=self.kind.value,
            queue_item_id=context.queue_item_id,
            execution_time_ms=execution_time,
            tokens_used=response.tokens_used,
            success=True,
            model_tier=response.model_tier.value,
            confidence=confidence,
        )

        return AgentAnalysis(
            analyzer_kind=self.kind,
            verdict=verdict,
            confidence=confidence,
            model_tier=response.model_tier,
            tokens_used=response.tokens_used,
            execution_time_ms=execution_time,
            consulted=tuple(peer.analyzer_kind for peer in consulted),
            rationale=rationale,
        )

    def refine(self, verdict: Verdict, confidence: float,
               consulted: List[AgentAnalysis]) -> Tuple[Verdict, float]:
        """Hook for kind-specific post-processing of a parsed verdict"""
        return verdict, confidence

    async def _consult(self, peers) -> List[AgentAnalysis]:
        if peers is None:
            return []
        results = []
        for target in self.consults:
            analysis = await peers.request(self.kind, target, depth=0)
            if analysis is not None:
                results.append(analysis)
        return results

    @staticmethod
    def _elapsed_ms(start_time: datetime) -> int:
        return int((utc_now() - start_time).total_seconds() * 1000)
