# tests/unit/application/orchestrators/test_agent_orchestrator.py
import pytest
import asyncio
from datetime import datetime, timezone

from application.orchestrators.agent_orchestrator import AgentOrchestrator, PeerExchange
from domain.errors import PermanentProviderError
from domain.models.agent_context import AgentAnalysis, AnalysisContext, AnalyzerKind
from domain.models.message import InboundMessage
from domain.models.queue_state import Priority, QueueItem, QueueStatus
from domain.models.routing import ModelTier, RoutingDecision, RoutingSource
from domain.models.verdict import GeneralSupportVerdict
from shared.config import OrchestratorConfig

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_analysis(kind: AnalyzerKind, confidence: float = 0.7) -> AgentAnalysis:
    return AgentAnalysis(kind, GeneralSupportVerdict(), confidence, ModelTier.STANDARD, 10, 1)


class StubAnalyzer:
    """Sleeps, optionally consults a peer, then answers or raises"""

    def __init__(self, kind: AnalyzerKind, delay: float = 0.0, error: Exception = None,
                 consult: AnalyzerKind = None):
        self.kind = kind
        self.delay = delay
        self.error = error
        self.consult = consult
        self.peer_result = "not requested"
        self.cancelled = False

    async def analyze(self, context, model_tier, peers=None):
        if self.consult is not None:
            self.peer_result = await peers.request(self.kind, self.consult, depth=0)
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return make_analysis(self.kind)


@pytest.fixture
def item():
    return QueueItem(id="item-1", source_message_id="<m@x>", status=QueueStatus.PROCESSING,
                     priority=Priority.MEDIUM, attempts=0, max_attempts=3,
                     created_at=NOW, updated_at=NOW, claimed_by="w1")


@pytest.fixture
def routing():
    return RoutingDecision(decision_id="d", model_tier=ModelTier.STANDARD, model_name="m",
                           estimated_tokens=100, estimated_cost=0.0, reasoning=(),
                           source=RoutingSource.ALGORITHMIC, created_at=NOW)


@pytest.fixture
def context():
    message = InboundMessage(message_id="<m@x>", sender="a@b.c", subject="s", body="b", received_at=NOW)
    return AnalysisContext(queue_item_id="item-1", attempt_number=1, message=message)


def config(**overrides) -> OrchestratorConfig:
    values = dict(analyzer_timeout_seconds=1.0, attempt_timeout_seconds=2.0, peer_wait_seconds=0.5)
    values.update(overrides)
    return OrchestratorConfig(**values)


class TestAgentOrchestrator:
    """Test concurrent fan-out and partial failure handling"""

    @pytest.mark.asyncio
    async def test_all_analyzers_contribute(self, item, routing, context):
        analyzers = [StubAnalyzer(AnalyzerKind.SUPPORT), StubAnalyzer(AnalyzerKind.SALES, delay=0.01),
                     StubAnalyzer(AnalyzerKind.OPPORTUNITY)]
        orchestrator = AgentOrchestrator(analyzers, config())

        analyses = await orchestrator.run(item, routing, context)

        assert {a.analyzer_kind for a in analyses} == {
            AnalyzerKind.SUPPORT, AnalyzerKind.SALES, AnalyzerKind.OPPORTUNITY}
        assert orchestrator.consumer_count == 3

    @pytest.mark.asyncio
    async def test_timed_out_analyzer_is_excluded(self, item, routing, context):
        """A slow analyzer is dropped and the rest proceed"""
        analyzers = [StubAnalyzer(AnalyzerKind.SUPPORT),
                     StubAnalyzer(AnalyzerKind.SALES, delay=5.0)]
        orchestrator = AgentOrchestrator(analyzers, config(analyzer_timeout_seconds=0.05))

        analyses = await orchestrator.run(item, routing, context)

        assert [a.analyzer_kind for a in analyses] == [AnalyzerKind.SUPPORT]

    @pytest.mark.asyncio
    async def test_failing_analyzer_is_excluded(self, item, routing, context):
        analyzers = [StubAnalyzer(AnalyzerKind.SUPPORT),
                     StubAnalyzer(AnalyzerKind.RELATIONSHIP, error=ValueError("unparseable"))]

        analyses = await AgentOrchestrator(analyzers, config()).run(item, routing, context)

        assert [a.analyzer_kind for a in analyses] == [AnalyzerKind.SUPPORT]

    @pytest.mark.asyncio
    async def test_attempt_deadline_cancels_stragglers(self, item, routing, context):
        slow = StubAnalyzer(AnalyzerKind.SALES, delay=5.0)
        analyzers = [StubAnalyzer(AnalyzerKind.SUPPORT), slow]
        orchestrator = AgentOrchestrator(
            analyzers, config(analyzer_timeout_seconds=10.0, attempt_timeout_seconds=0.05))

        analyses = await orchestrator.run(item, routing, context)

        assert [a.analyzer_kind for a in analyses] == [AnalyzerKind.SUPPORT]
        assert slow.cancelled

    @pytest.mark.asyncio
    async def test_permanent_error_aborts_attempt(self, item, routing, context):
        """A permanent provider error fails the whole attempt and cancels the rest"""
        slow = StubAnalyzer(AnalyzerKind.SALES, delay=5.0)
        analyzers = [StubAnalyzer(AnalyzerKind.SUPPORT, error=PermanentProviderError("auth")), slow]

        with pytest.raises(PermanentProviderError):
            await AgentOrchestrator(analyzers, config()).run(item, routing, context)

        assert slow.cancelled

    @pytest.mark.asyncio
    async def test_no_analyzers_yields_nothing(self, item, routing, context):
        assert await AgentOrchestrator([], config()).run(item, routing, context) == []

    @pytest.mark.asyncio
    async def test_mutual_consultation_does_not_deadlock(self, item, routing, context):
        """Two analyzers consulting each other both finish; one sees the other"""
        sales = StubAnalyzer(AnalyzerKind.SALES, consult=AnalyzerKind.RELATIONSHIP, delay=0.01)
        relationship = StubAnalyzer(AnalyzerKind.RELATIONSHIP, consult=AnalyzerKind.SALES, delay=0.01)

        analyses = await AgentOrchestrator([sales, relationship], config()).run(item, routing, context)

        assert len(analyses) == 2
        results = [sales.peer_result, relationship.peer_result]
        assert results.count(None) == 1


class TestPeerExchange:
    """Test bounded peer requests"""

    @pytest.mark.asyncio
    async def test_depth_zero_waits_for_target(self):
        exchange = PeerExchange([AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP], wait_seconds=1.0)
        relationship = make_analysis(AnalyzerKind.RELATIONSHIP)

        async def publish_later():
            await asyncio.sleep(0.01)
            exchange.publish(AnalyzerKind.RELATIONSHIP, relationship)

        publisher = asyncio.create_task(publish_later())
        result = await exchange.request(AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP)
        await publisher

        assert result is relationship

    @pytest.mark.asyncio
    async def test_max_depth_returns_completed_only(self):
        exchange = PeerExchange([AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP], max_depth=1)

        assert await exchange.request(AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP, depth=1) is None

        done = make_analysis(AnalyzerKind.RELATIONSHIP)
        exchange.publish(AnalyzerKind.RELATIONSHIP, done)
        assert await exchange.request(AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP, depth=1) is done
        assert [r.depth for r in exchange.requests] == [1, 1]

    @pytest.mark.asyncio
    async def test_awaited_requester_is_not_allowed_to_wait(self):
        """An analyzer someone is waiting on may not itself wait"""
        exchange = PeerExchange([AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP], wait_seconds=1.0)

        waiter = asyncio.create_task(exchange.request(AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP))
        await asyncio.sleep(0)

        nested = await exchange.request(AnalyzerKind.RELATIONSHIP, AnalyzerKind.SALES)
        exchange.publish(AnalyzerKind.RELATIONSHIP, make_analysis(AnalyzerKind.RELATIONSHIP))

        assert nested is None
        assert exchange.requests[-1].depth == 1
        assert (await waiter).analyzer_kind == AnalyzerKind.RELATIONSHIP

    @pytest.mark.asyncio
    async def test_wait_times_out(self):
        exchange = PeerExchange([AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP], wait_seconds=0.01)
        assert await exchange.request(AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP) is None

    @pytest.mark.asyncio
    async def test_failed_target_publishes_none(self):
        exchange = PeerExchange([AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP])
        exchange.publish(AnalyzerKind.RELATIONSHIP, None)

        assert await exchange.request(AnalyzerKind.SALES, AnalyzerKind.RELATIONSHIP) is None

    @pytest.mark.asyncio
    async def test_self_and_unknown_targets(self):
        exchange = PeerExchange([AnalyzerKind.SALES])

        assert await exchange.request(AnalyzerKind.SALES, AnalyzerKind.SALES) is None
        assert await exchange.request(AnalyzerKind.SALES, AnalyzerKind.OPPORTUNITY) is None
