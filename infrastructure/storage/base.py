# infrastructure/storage/base.py
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from domain.models.message import ConversationTurn, InboundMessage
from domain.models.queue_state import (
    AttemptRecord,
    Priority,
    QueueItem,
    QueueStats,
    ReleaseOutcome,
    ReviewFilter,
    ReviewOutcome,
)


class QueueStore(ABC):
    """
    Durable table of work items.

    claim_next is the only mutual-exclusion primitive in the system: an item in
    PROCESSING is owned by exactly one worker until it releases the item, marks
    it failed, or its lease expires and another worker reclaims it.
    """

    async def initialize(self) -> None:
        """Prepare the backing store"""

    async def close(self) -> None:
        """Release backing store resources"""

    @abstractmethod
    async def enqueue(self, message: InboundMessage, priority: Priority,
                      corrects_item_id: Optional[str] = None) -> QueueItem:
        """Store the message and create its queue item; idempotent per message id"""

    @abstractmethod
    async def get(self, item_id: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[InboundMessage]:
        ...

    @abstractmethod
    async def get_thread_history(self, thread_id: str, before: datetime,
                                 limit: int = 10) -> List[ConversationTurn]:
        """Earlier messages of a thread, oldest first, with their last composite score"""

    @abstractmethod
    async def claim_next(self, worker_id: str, lease_seconds: float) -> Optional[QueueItem]:
        """Atomically claim the highest-priority claimable item"""

    @abstractmethod
    async def release(self, item: QueueItem, outcome: ReleaseOutcome,
                      due_at: Optional[datetime] = None,
                      assigned_reviewer: Optional[str] = None) -> QueueItem:
        """Finalize a claimed item; raises LeaseLostError if the caller no longer holds the lease"""

    async def flag_for_review(self, item: QueueItem, due_at: datetime,
                              assigned_reviewer: Optional[str] = None) -> QueueItem:
        return await self.release(item, ReleaseOutcome.REQUIRES_REVIEW,
                                  due_at=due_at, assigned_reviewer=assigned_reviewer)

    @abstractmethod
    async def mark_failed(self, item: QueueItem, error: str, terminal: bool = False) -> QueueItem:
        """Count a failed attempt; FAILED when terminal or at max_attempts, else back to PENDING with backoff"""

    @abstractmethod
    async def list_requiring_review(self, review_filter: Optional[ReviewFilter] = None) -> List[QueueItem]:
        ...

    @abstractmethod
    async def resolve_review(self, item_id: str, outcome: ReviewOutcome) -> QueueItem:
        """Move a REQUIRES_REVIEW item to APPROVED or REJECTED and store the decision"""

    @abstractmethod
    async def record_attempt(self, record: AttemptRecord) -> None:
        ...

    @abstractmethod
    async def list_attempts(self, item_id: str) -> List[AttemptRecord]:
        ...

    @abstractmethod
    async def list_failed(self, organization_id: Optional[str] = None,
                          limit: int = 100) -> List[QueueItem]:
        ...

    @abstractmethod
    async def queue_stats(self, organization_id: Optional[str] = None) -> QueueStats:
        ...

    @abstractmethod
    async def reset_failed(self, organization_id: Optional[str] = None) -> int:
        """Operator action: return FAILED items to PENDING with a fresh attempt budget"""

    @abstractmethod
    async def cleanup_completed(self, days_to_keep: int) -> int:
        """Delete terminal items older than days_to_keep"""
