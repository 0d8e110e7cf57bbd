# domain/models/queue_state.py
from dataclasses import dataclass, field, replace
from typing import Dict, Any, Optional, Tuple
from datetime import datetime
from enum import Enum


class QueueStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    REQUIRES_REVIEW = "requires_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.APPROVED, QueueStatus.REJECTED,
                        QueueStatus.COMPLETED, QueueStatus.FAILED)


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Ordering key: Urgent > High > Medium > Low"""
        return _PRIORITY_RANKS[self]

    @classmethod
    def from_hint(cls, hint: Optional[str]) -> "Priority":
        """Map an upstream priority hint to a Priority, defaulting to MEDIUM"""
        if isinstance(hint, Priority):
            return hint
        if not hint:
            return cls.MEDIUM
        try:
            return cls(str(hint).strip().lower())
        except ValueError:
            return cls.MEDIUM


_PRIORITY_RANKS = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.URGENT: 4,
}


class ReleaseOutcome(Enum):
    """Statuses a lease holder may finalize an item into"""
    COMPLETED = "completed"
    REQUIRES_REVIEW = "requires_review"


@dataclass(frozen=True)
class QueueItem:
    """Immutable snapshot of a queue item at a point in time"""
    id: str
    source_message_id: str
    status: QueueStatus
    priority: Priority
    attempts: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    last_error: Optional[str] = None
    assigned_reviewer: Optional[str] = None
    due_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    # Fresh per claim; a reclaimed item gets a new token even for the same worker id
    lease_token: Optional[str] = None
    available_at: Optional[datetime] = None
    organization_id: Optional[str] = None
    corrects_item_id: Optional[str] = None

    def with_changes(self, **changes: Any) -> "QueueItem":
        return replace(self, **changes)

    def lease_active(self, now: datetime) -> bool:
        return (
            self.status == QueueStatus.PROCESSING
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )

    def is_overdue(self, now: datetime) -> bool:
        return (
            self.status == QueueStatus.REQUIRES_REVIEW
            and self.due_at is not None
            and now > self.due_at
        )


@dataclass(frozen=True)
class ReviewFilter:
    """Filter for review listings"""
    organization_id: Optional[str] = None
    assigned_reviewer: Optional[str] = None
    overdue_only: bool = False
    limit: int = 100


@dataclass(frozen=True)
class AttemptRecord:
    """Append-only record of one processing attempt"""
    queue_item_id: str
    attempt_number: int
    outcome: str
    composite_score: Optional[float] = None
    routing_decision: Optional[Dict[str, Any]] = None
    analysis_summaries: Tuple[Dict[str, Any], ...] = ()
    consensus: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ReviewOutcome:
    """Result of a human review resolution"""
    queue_item_id: str
    reviewer_id: str
    approved: bool
    diverged: bool
    resolved_at: datetime
    override_verdict: Optional[Dict[str, Any]] = None
    feedback: Optional[str] = None

    @property
    def status(self) -> QueueStatus:
        return QueueStatus.APPROVED if self.approved else QueueStatus.REJECTED


@dataclass(frozen=True)
class QueueStats:
    """Count of items per status"""
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def count(self, status: QueueStatus) -> int:
        return self.counts.get(status.value, 0)
