# tests/integration/test_end_to_end.py
"""
Full path from raw email to a finished queue item, running in memory with
the deterministic keyword provider.
"""
import pytest
import pytest_asyncio

from domain.models.queue_state import QueueStatus
from main import build_components
from shared.config import Settings


def raw_email(message_id: str, body: str, subject: str = "Question") -> bytes:
    return (
        f"From: Dana Buyer <dana@acme.example>\r\n"
        f"To: sales@shop.example\r\n"
        f"Subject: {subject}\r\n"
        f"Message-ID: {message_id}\r\n"
        f"Content-Type: text/plain; charset=utf-8\r\n"
        f"\r\n"
        f"{body}\r\n"
    ).encode()


@pytest_asyncio.fixture
async def components():
    built = await build_components(Settings())
    yield built
    await built["notifier"].close()
    await built["gateway"].close()
    await built["store"].close()


class TestEndToEnd:
    """Test ingestion through consensus with every component wired together"""

    @pytest.mark.asyncio
    async def test_price_question_completes_on_premium(self, components):
        store = components["store"]
        item_id = await components["ingestion"].enqueue(
            raw_email("<price@acme.example>", "Is SKU-100 in stock and what is the price?"))

        outcome = await components["worker_pool"].run_once("worker-0")

        assert outcome == "completed"
        assert (await store.get(item_id)).status == QueueStatus.COMPLETED

        attempts = await store.list_attempts(item_id)
        assert len(attempts) == 1
        routing = attempts[0].routing_decision
        assert routing["model_tier"] == "premium"
        assert routing["source"] == "forced"
        assert attempts[0].consensus["support_level"] == 1.0
        assert attempts[0].consensus["final_verdict"]["category"] == "support/product-inquiry"
        assert len(attempts[0].analysis_summaries) == 5

    @pytest.mark.asyncio
    async def test_refund_request_goes_to_review_and_is_approved(self, components):
        store = components["store"]
        workflow = components["review_workflow"]
        item_id = await components["ingestion"].enqueue(
            raw_email("<refund@acme.example>", "I was charged twice, please refund $49.99"))

        outcome = await components["worker_pool"].run_once("worker-0")

        assert outcome == "requires_review"
        pending = await workflow.list_requiring_review()
        assert [item.id for item in pending] == [item_id]
        assert pending[0].due_at is not None

        resolution = await workflow.resolve(item_id, "rev-1", approve=True)

        assert resolution.status == QueueStatus.APPROVED
        assert (await store.get(item_id)).status == QueueStatus.APPROVED

    @pytest.mark.asyncio
    async def test_nothing_to_claim(self, components):
        assert await components["worker_pool"].run_once("worker-0") is None
