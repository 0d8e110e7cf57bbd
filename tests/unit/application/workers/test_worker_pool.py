# tests/unit/application/workers/test_worker_pool.py
import pytest
import asyncio
from datetime import datetime, timezone

from application.workers.worker_pool import WorkerPool
from domain.errors import StorageError
from domain.models.message import InboundMessage
from domain.models.queue_state import Priority, ReleaseOutcome
from infrastructure.storage.memory_queue_store import InMemoryQueueStore
from shared.config import WorkerConfig


class CompletingPipeline:
    """Completes every item it is given and remembers who processed it"""

    def __init__(self, store, delay: float = 0.0):
        self.store = store
        self.delay = delay
        self.processed = []

    async def process(self, item, worker_id):
        await asyncio.sleep(self.delay)
        self.processed.append((item.id, worker_id))
        await self.store.release(item, ReleaseOutcome.COMPLETED)
        return "completed"


class FlakyStore(InMemoryQueueStore):
    def __init__(self):
        super().__init__()
        self.failures = 1

    async def claim_next(self, worker_id, lease_seconds):
        if self.failures:
            self.failures -= 1
            raise StorageError("connection reset")
        return await super().claim_next(worker_id, lease_seconds)


def make_message(index: int) -> InboundMessage:
    return InboundMessage(message_id=f"<m{index}@x>", sender="a@b.c", subject="s", body="b",
                          received_at=datetime(2024, 5, 1, tzinfo=timezone.utc))


FAST = WorkerConfig(worker_count=3, idle_poll_min_seconds=0.01, idle_poll_max_seconds=0.02)


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestWorkerPool:
    """Test claiming loop behaviour"""

    @pytest.mark.asyncio
    async def test_run_once_idle(self):
        store = InMemoryQueueStore()
        pool = WorkerPool(store, CompletingPipeline(store), FAST)

        assert await pool.run_once("w1") is None

    @pytest.mark.asyncio
    async def test_run_once_processes_item(self):
        store = InMemoryQueueStore()
        pipeline = CompletingPipeline(store)
        item = await store.enqueue(make_message(1), Priority.MEDIUM)
        pool = WorkerPool(store, pipeline, FAST)

        assert await pool.run_once("w1") == "completed"
        assert pipeline.processed == [(item.id, "w1")]
        assert pool.processed == 1

    @pytest.mark.asyncio
    async def test_workers_process_each_item_once(self):
        """Concurrent workers never process the same item twice"""
        store = InMemoryQueueStore()
        pipeline = CompletingPipeline(store, delay=0.005)
        for index in range(10):
            await store.enqueue(make_message(index), Priority.MEDIUM)
        pool = WorkerPool(store, pipeline, FAST)

        await pool.start()
        try:
            await wait_until(lambda: len(pipeline.processed) == 10)
        finally:
            await pool.stop(timeout=1.0)

        item_ids = [item_id for item_id, _ in pipeline.processed]
        assert len(set(item_ids)) == 10
        assert not pool.running

    @pytest.mark.asyncio
    async def test_storage_error_does_not_kill_worker(self):
        store = FlakyStore()
        pipeline = CompletingPipeline(store)
        await store.enqueue(make_message(1), Priority.MEDIUM)
        pool = WorkerPool(store, pipeline, WorkerConfig(worker_count=1, idle_poll_min_seconds=0.01,
                                                        idle_poll_max_seconds=0.02))

        await pool.start()
        try:
            await wait_until(lambda: len(pipeline.processed) == 1)
        finally:
            await pool.stop(timeout=1.0)

        assert store.failures == 0

    @pytest.mark.asyncio
    async def test_stop_interrupts_idle_sleep(self):
        store = InMemoryQueueStore()
        pool = WorkerPool(store, CompletingPipeline(store),
                          WorkerConfig(worker_count=2, idle_poll_min_seconds=30, idle_poll_max_seconds=60))

        await pool.start()
        await asyncio.sleep(0.01)
        assert pool.running

        await asyncio.wait_for(pool.stop(timeout=5.0), timeout=1.0)
        assert not pool.running

    @pytest.mark.asyncio
    async def test_stop_cancels_stuck_attempts(self):
        store = InMemoryQueueStore()
        await store.enqueue(make_message(1), Priority.MEDIUM)
        pool = WorkerPool(store, CompletingPipeline(store, delay=10), WorkerConfig(worker_count=1))

        await pool.start()
        await asyncio.sleep(0.01)
        await pool.stop(timeout=0.05)

        assert not pool.running

    def test_jitter_stays_in_bounds(self):
        pool = WorkerPool(InMemoryQueueStore(), None, WorkerConfig(jitter_ratio=0.25))
        for _ in range(50):
            assert 0.75 <= pool._jittered(1.0) <= 1.25

    def test_worker_ids_differ_across_pools(self):
        """Two processes running the same pool name never share a worker id"""
        store = InMemoryQueueStore()
        first = WorkerPool(store, None, FAST)
        second = WorkerPool(store, None, FAST)

        assert first.worker_id(0) != second.worker_id(0)
        assert first.worker_id(0).startswith("worker-")
        assert len({first.worker_id(index) for index in range(4)}) == 4
