# application/workers/worker_pool.py
import asyncio
import random
import uuid
from typing import List, Optional

from domain.errors import StorageError
from infrastructure.storage.base import QueueStore
from shared.config import QueueConfig, WorkerConfig
from shared.logging import logger


class WorkerPool:
    """Fixed-size pool of asyncio workers repeatedly claiming queue items"""

    def __init__(self, store: QueueStore, pipeline, config: Optional[WorkerConfig] = None,
                 queue_config: Optional[QueueConfig] = None, name: str = "worker"):
        self.store = store
        self.pipeline = pipeline
        self.config = config or WorkerConfig()
        self.queue_config = queue_config or QueueConfig()
        self.name = name
        # Distinguishes worker ids across processes sharing a database
        self.instance_id = uuid.uuid4().hex[:8]
        self.processed = 0
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    def worker_id(self, index: int) -> str:
        return f"{self.name}-{self.instance_id}-{index}"

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self):
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(self.worker_id(index)), name=self.worker_id(index))
            for index in range(self.config.worker_count)
        ]
        logger.info("Worker pool started", worker_count=self.config.worker_count)

    async def stop(self, timeout: float = 30.0):
        """Let in-flight attempts finish, then cancel anything still running"""
        self._stopping.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped", processed=self.processed, cancelled=len(pending))

    async def run_once(self, worker_id: str) -> Optional[str]:
        """Claim and process a single item; None when nothing was claimable"""
        item = await self.store.claim_next(worker_id, self.queue_config.lease_seconds)
        if item is None:
            return None
        logger.info("Queue item claimed",
                    queue_item_id=item.id,
                    worker_id=worker_id,
                    priority=item.priority.value,
                    attempt=item.attempts + 1)
        outcome = await self.pipeline.process(item, worker_id)
        self.processed += 1
        return outcome

    async def _worker_loop(self, worker_id: str):
        idle_delay = self.config.idle_poll_min_seconds
        while not self._stopping.is_set():
            try:
                outcome = await self.run_once(worker_id)
            except StorageError as e:
                logger.error("Storage error in worker loop, continuing",
                             worker_id=worker_id, error=str(e))
                outcome = None
            except Exception as e:
                logger.exception("Unexpected error in worker loop, continuing",
                                 worker_id=worker_id, error=str(e))
                outcome = None

            if outcome is not None:
                idle_delay = self.config.idle_poll_min_seconds
                continue

            await self._sleep(self._jittered(idle_delay))
            idle_delay = min(idle_delay * 2, self.config.idle_poll_max_seconds)

    def _jittered(self, delay: float) -> float:
        spread = delay * self.config.jitter_ratio
        return max(0.0, delay + random.uniform(-spread, spread))

    async def _sleep(self, delay: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
