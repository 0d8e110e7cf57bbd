# application/orchestrators/agent_orchestrator.py
import asyncio
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from domain.errors import OrchestratorPartialFailure, PermanentProviderError
from domain.models.agent_context import AgentAnalysis, AnalysisContext, AnalyzerKind, PeerRequest
from domain.models.queue_state import QueueItem
from domain.models.routing import RoutingDecision
from infrastructure.agents.base import BaseAnalyzer
from shared.clock import utc_now
from shared.config import OrchestratorConfig
from shared.logging import logger


class PeerExchange:
    """
    Bounded request/response channel between analyzers of one attempt.

    A request at depth 0 may wait briefly for the target to finish. Requests
    at max_depth or beyond (including requests made by an analyzer that a
    peer is currently waiting on) are served only from completed results.
    """

    def __init__(self, kinds: Sequence[AnalyzerKind], max_depth: int = 1, wait_seconds: float = 2.0):
        self.max_depth = max_depth
        self.wait_seconds = wait_seconds
        self._results: Dict[AnalyzerKind, Optional[AgentAnalysis]] = {}
        self._events: Dict[AnalyzerKind, asyncio.Event] = {kind: asyncio.Event() for kind in kinds}
        self._awaited: Dict[AnalyzerKind, int] = defaultdict(int)
        self.requests: List[PeerRequest] = []

    def publish(self, kind: AnalyzerKind, analysis: Optional[AgentAnalysis]):
        """Record a finished (or failed, as None) analyzer and wake its waiters"""
        self._results[kind] = analysis
        event = self._events.get(kind)
        if event is not None:
            event.set()

    def completed(self, kind: AnalyzerKind) -> Optional[AgentAnalysis]:
        return self._results.get(kind)

    async def request(self, requester: AnalyzerKind, target: AnalyzerKind,
                      depth: int = 0) -> Optional[AgentAnalysis]:
        effective_depth = depth + (1 if self._awaited[requester] else 0)
        self.requests.append(PeerRequest(requester, target, effective_depth, utc_now()))

        if target == requester or target not in self._events:
            return None
        if self._events[target].is_set():
            return self._results.get(target)
        if effective_depth >= self.max_depth:
            return None

        self._awaited[target] += 1
        try:
            await asyncio.wait_for(self._events[target].wait(), timeout=self.wait_seconds)
        except asyncio.TimeoutError:
            logger.info("Peer analysis not ready, proceeding without it",
                        requester=requester.value, target=target.value)
            return None
        finally:
            self._awaited[target] -= 1

        return self._results.get(target)


class AgentOrchestrator:
    """Fans one queue item out to every configured analyzer concurrently"""

    def __init__(self, analyzers: Sequence[BaseAnalyzer], config: Optional[OrchestratorConfig] = None):
        self.analyzers = list(analyzers)
        self.config = config or OrchestratorConfig()

    @property
    def consumer_count(self) -> int:
        return len(self.analyzers)

    async def run(self, item: QueueItem, routing_decision: RoutingDecision,
                  context: AnalysisContext) -> List[AgentAnalysis]:
        exchange = PeerExchange(
            [analyzer.kind for analyzer in self.analyzers],
            max_depth=self.config.max_peer_depth,
            wait_seconds=self.config.peer_wait_seconds,
        )
        tasks: Dict[asyncio.Task, AnalyzerKind] = {
            asyncio.create_task(
                self._run_one(analyzer, context, routing_decision, exchange),
                name=f"{item.id}:{analyzer.kind.value}",
            ): analyzer.kind
            for analyzer in self.analyzers
        }

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.attempt_timeout_seconds
        pending = set(tasks)

        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining,
                                                   return_when=asyncio.FIRST_EXCEPTION)
                for task in done:
                    if not task.cancelled() and isinstance(task.exception(), PermanentProviderError):
                        raise task.exception()
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        analyses: List[AgentAnalysis] = []
        excluded: Dict[str, str] = {}
        for task, kind in tasks.items():
            if task in pending or task.cancelled():
                excluded[kind.value] = "attempt deadline exceeded"
                continue
            error = task.exception()
            if error is None:
                analyses.append(task.result())
            elif isinstance(error, asyncio.TimeoutError):
                excluded[kind.value] = f"timed out after {self.config.analyzer_timeout_seconds}s"
            else:
                excluded[kind.value] = str(error) or type(error).__name__

        if excluded:
            partial = OrchestratorPartialFailure(
                f"{len(excluded)} of {len(tasks)} analyzers excluded from consensus", excluded)
            logger.warning("Analyzers excluded from consensus",
                           queue_item_id=item.id,
                           excluded=partial.excluded,
                           remaining=len(analyses))

        return analyses

    async def _run_one(self, analyzer: BaseAnalyzer, context: AnalysisContext,
                       routing_decision: RoutingDecision, exchange: PeerExchange) -> AgentAnalysis:
        analysis: Optional[AgentAnalysis] = None
        try:
            analysis = await asyncio.wait_for(
                analyzer.analyze(context, routing_decision.model_tier, exchange),
                timeout=self.config.analyzer_timeout_seconds,
            )
            return analysis
        finally:
            exchange.publish(analyzer.kind, analysis)
