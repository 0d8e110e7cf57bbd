# infrastructure/storage/memory_queue_store.py
import asyncio
import itertools
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from domain.errors import InvalidTransitionError, LeaseLostError, QueueItemNotFoundError
from domain.models.message import ConversationTurn, InboundMessage
from domain.models.queue_state import (
    AttemptRecord,
    Priority,
    QueueItem,
    QueueStats,
    QueueStatus,
    ReleaseOutcome,
    ReviewFilter,
    ReviewOutcome,
)
from infrastructure.storage.base import QueueStore
from shared.clock import utc_now
from shared.config import QueueConfig
from shared.logging import logger


class InMemoryQueueStore(QueueStore):
    """Single-process queue store; every mutation runs under one asyncio lock"""

    def __init__(self, config: Optional[QueueConfig] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.config = config or QueueConfig()
        self.clock = clock
        self._lock = asyncio.Lock()
        self._items: Dict[str, QueueItem] = {}
        self._sequence: Dict[str, int] = {}
        self._by_message: Dict[str, str] = {}
        self._messages: Dict[str, InboundMessage] = {}
        self._attempts: Dict[str, List[AttemptRecord]] = {}
        self._reviews: Dict[str, ReviewOutcome] = {}
        self._counter = itertools.count()

    async def enqueue(self, message: InboundMessage, priority: Priority,
                      corrects_item_id: Optional[str] = None) -> QueueItem:
        async with self._lock:
            if corrects_item_id is None and message.message_id in self._by_message:
                existing = self._items[self._by_message[message.message_id]]
                logger.debug("Message already enqueued",
                             message_id=message.message_id, queue_item_id=existing.id)
                return existing

            now = self.clock()
            item = QueueItem(
                id=str(uuid.uuid4()),
                source_message_id=message.message_id,
                status=QueueStatus.PENDING,
                priority=priority,
                attempts=0,
                max_attempts=self.config.max_attempts,
                created_at=now,
                updated_at=now,
                available_at=now,
                organization_id=message.organization_id,
                corrects_item_id=corrects_item_id,
            )
            self._messages.setdefault(message.message_id, message)
            self._items[item.id] = item
            self._sequence[item.id] = next(self._counter)
            if corrects_item_id is None:
                self._by_message[message.message_id] = item.id

        logger.info("Queue item enqueued", queue_item_id=item.id,
                    message_id=message.message_id, priority=priority.value)
        return item

    async def get(self, item_id: str) -> Optional[QueueItem]:
        return self._items.get(item_id)

    async def get_message(self, message_id: str) -> Optional[InboundMessage]:
        return self._messages.get(message_id)

    async def get_thread_history(self, thread_id: str, before: datetime,
                                 limit: int = 10) -> List[ConversationTurn]:
        turns: List[Tuple[datetime, ConversationTurn]] = []
        for item in self._items.values():
            message = self._messages.get(item.source_message_id)
            if message is None or message.thread_id != thread_id or message.received_at >= before:
                continue
            attempts = self._attempts.get(item.id, [])
            scores = [a.composite_score for a in attempts if a.composite_score is not None]
            turns.append((message.received_at, ConversationTurn(
                text=message.text,
                composite_score=scores[-1] if scores else None,
                received_at=message.received_at,
            )))
        turns.sort(key=lambda pair: pair[0])
        return [turn for _, turn in turns[-limit:]]

    def _is_claimable(self, item: QueueItem, now: datetime) -> bool:
        if item.status == QueueStatus.PENDING:
            return item.available_at is None or item.available_at <= now
        if item.status == QueueStatus.PROCESSING:
            return item.lease_expires_at is not None and item.lease_expires_at <= now
        return False

    async def claim_next(self, worker_id: str, lease_seconds: float) -> Optional[QueueItem]:
        async with self._lock:
            now = self.clock()
            candidates = [item for item in self._items.values() if self._is_claimable(item, now)]
            if not candidates:
                return None

            candidates.sort(key=lambda i: (-i.priority.rank, i.created_at, self._sequence[i.id]))
            chosen = candidates[0]
            reclaimed = chosen.status == QueueStatus.PROCESSING
            claimed = chosen.with_changes(
                status=QueueStatus.PROCESSING,
                claimed_by=worker_id,
                lease_token=str(uuid.uuid4()),
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            self._items[claimed.id] = claimed

        if reclaimed:
            logger.warning("Expired lease reclaimed", queue_item_id=claimed.id,
                           previous_owner=chosen.claimed_by, worker_id=worker_id)
        return claimed

    def _require_lease(self, item: QueueItem) -> QueueItem:
        current = self._items.get(item.id)
        if current is None:
            raise QueueItemNotFoundError(item.id)
        if current.status != QueueStatus.PROCESSING or current.lease_token != item.lease_token:
            raise LeaseLostError(f"Lease on {item.id} is no longer held by {item.claimed_by}")
        return current

    async def release(self, item: QueueItem, outcome: ReleaseOutcome,
                      due_at: Optional[datetime] = None,
                      assigned_reviewer: Optional[str] = None) -> QueueItem:
        async with self._lock:
            current = self._require_lease(item)
            status = QueueStatus(outcome.value)
            released = current.with_changes(
                status=status,
                claimed_by=None,
                lease_token=None,
                lease_expires_at=None,
                due_at=due_at if status == QueueStatus.REQUIRES_REVIEW else None,
                assigned_reviewer=assigned_reviewer if status == QueueStatus.REQUIRES_REVIEW else None,
                updated_at=self.clock(),
            )
            self._items[released.id] = released

        logger.info("Queue item released", queue_item_id=released.id, status=status.value)
        return released

    async def mark_failed(self, item: QueueItem, error: str, terminal: bool = False) -> QueueItem:
        async with self._lock:
            current = self._require_lease(item)
            now = self.clock()
            attempts = current.attempts + 1
            if terminal or attempts >= current.max_attempts:
                changes = dict(status=QueueStatus.FAILED, available_at=None)
            else:
                delay = self.config.backoff_seconds(attempts)
                changes = dict(status=QueueStatus.PENDING,
                               available_at=now + timedelta(seconds=delay))
            failed = current.with_changes(
                attempts=attempts,
                last_error=error,
                claimed_by=None,
                lease_token=None,
                lease_expires_at=None,
                updated_at=now,
                **changes,
            )
            self._items[failed.id] = failed

        logger.warning("Queue item attempt failed", queue_item_id=failed.id,
                       attempts=attempts, status=failed.status.value, error=error)
        return failed

    async def list_requiring_review(self, review_filter: Optional[ReviewFilter] = None) -> List[QueueItem]:
        review_filter = review_filter or ReviewFilter()
        now = self.clock()
        items = [
            item for item in self._items.values()
            if item.status == QueueStatus.REQUIRES_REVIEW
            and (review_filter.organization_id is None or item.organization_id == review_filter.organization_id)
            and (review_filter.assigned_reviewer is None or item.assigned_reviewer == review_filter.assigned_reviewer)
            and (not review_filter.overdue_only or item.is_overdue(now))
        ]
        far_future = datetime.max.replace(tzinfo=now.tzinfo)
        items.sort(key=lambda i: (i.due_at or far_future, self._sequence[i.id]))
        return items[:review_filter.limit]

    async def resolve_review(self, item_id: str, outcome: ReviewOutcome) -> QueueItem:
        async with self._lock:
            current = self._items.get(item_id)
            if current is None:
                raise QueueItemNotFoundError(item_id)
            if current.status != QueueStatus.REQUIRES_REVIEW:
                raise InvalidTransitionError(item_id, current.status.value, outcome.status.value)
            resolved = current.with_changes(status=outcome.status, updated_at=self.clock())
            self._items[item_id] = resolved
            self._reviews[item_id] = outcome
        return resolved

    async def record_attempt(self, record: AttemptRecord) -> None:
        async with self._lock:
            stamped = record if record.created_at else replace(record, created_at=self.clock())
            self._attempts.setdefault(record.queue_item_id, []).append(stamped)

    async def list_attempts(self, item_id: str) -> List[AttemptRecord]:
        return list(self._attempts.get(item_id, []))

    async def list_failed(self, organization_id: Optional[str] = None,
                          limit: int = 100) -> List[QueueItem]:
        items = [
            item for item in self._items.values()
            if item.status == QueueStatus.FAILED
            and (organization_id is None or item.organization_id == organization_id)
        ]
        items.sort(key=lambda i: i.updated_at, reverse=True)
        return items[:limit]

    async def queue_stats(self, organization_id: Optional[str] = None) -> QueueStats:
        counts = {status.value: 0 for status in QueueStatus}
        for item in self._items.values():
            if organization_id is None or item.organization_id == organization_id:
                counts[item.status.value] += 1
        return QueueStats(counts=counts)

    async def reset_failed(self, organization_id: Optional[str] = None) -> int:
        async with self._lock:
            now = self.clock()
            reset = 0
            for item in list(self._items.values()):
                if item.status != QueueStatus.FAILED:
                    continue
                if organization_id is not None and item.organization_id != organization_id:
                    continue
                self._items[item.id] = item.with_changes(
                    status=QueueStatus.PENDING, attempts=0, available_at=now, updated_at=now,
                )
                reset += 1
        if reset:
            logger.info("Failed queue items reset", count=reset, organization_id=organization_id)
        return reset

    async def cleanup_completed(self, days_to_keep: int) -> int:
        async with self._lock:
            cutoff = self.clock() - timedelta(days=days_to_keep)
            # Originals of corrective items stay until their corrections are gone
            referenced = {item.corrects_item_id for item in self._items.values() if item.corrects_item_id}
            doomed = [
                item.id for item in self._items.values()
                if item.status.is_terminal and item.status != QueueStatus.FAILED
                and item.updated_at < cutoff
                and item.id not in referenced
            ]
            for item_id in doomed:
                item = self._items.pop(item_id)
                self._sequence.pop(item_id, None)
                self._attempts.pop(item_id, None)
                self._reviews.pop(item_id, None)
                if self._by_message.get(item.source_message_id) == item_id:
                    del self._by_message[item.source_message_id]

            still_used = {item.source_message_id for item in self._items.values()}
            for message_id in [m for m in self._messages if m not in still_used]:
                del self._messages[message_id]

        if doomed:
            logger.info("Old queue items cleaned up", deleted=len(doomed), days_to_keep=days_to_keep)
        return len(doomed)
