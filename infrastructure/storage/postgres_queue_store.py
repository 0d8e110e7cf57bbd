# infrastructure/storage/postgres_queue_store.py
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from domain.errors import InvalidTransitionError, LeaseLostError, QueueItemNotFoundError, StorageError
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
from infrastructure.storage.schema import create_schema
from shared.config import QueueConfig
from shared.logging import logger

_STORAGE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresQueueStore(QueueStore):
    def __init__(self, database_url: str, config: Optional[QueueConfig] = None,
                 connection_pool: Optional[asyncpg.Pool] = None):
        self.database_url = database_url
        self.config = config or QueueConfig()
        self.connection_pool: Optional[asyncpg.Pool] = connection_pool

    async def initialize(self):
        """Initialize database connection pool and create tables"""
        if self.connection_pool is None:
            self.connection_pool = await asyncpg.create_pool(
                self.database_url,
                min_size=5,
                max_size=20,
                command_timeout=60
            )
        async with self._acquire("initialize") as conn:
            await create_schema(conn)

    @asynccontextmanager
    async def _acquire(self, operation: str):
        if self.connection_pool is None:
            raise StorageError("Queue store used before initialize()")
        try:
            async with self.connection_pool.acquire() as conn:
                yield conn
        except _STORAGE_ERRORS as e:
            logger.error("Queue store operation failed", operation=operation, error=str(e))
            raise StorageError(f"{operation} failed: {e}") from e

    @staticmethod
    def _row_to_item(row) -> QueueItem:
        return QueueItem(
            id=row["id"],
            source_message_id=row["source_message_id"],
            status=QueueStatus(row["status"]),
            priority=Priority(row["priority"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_error=row["last_error"],
            assigned_reviewer=row["assigned_reviewer"],
            due_at=row["due_at"],
            claimed_by=row["claimed_by"],
            lease_expires_at=row["lease_expires_at"],
            lease_token=row["lease_token"],
            available_at=row["available_at"],
            organization_id=row["organization_id"],
            corrects_item_id=row["corrects_item_id"],
        )

    @staticmethod
    def _row_to_message(row) -> InboundMessage:
        headers = row["headers"]
        return InboundMessage(
            message_id=row["message_id"],
            sender=row["sender"],
            subject=row["subject"],
            body=row["body"],
            received_at=row["received_at"],
            thread_id=row["thread_id"],
            organization_id=row["organization_id"],
            headers=json.loads(headers) if isinstance(headers, str) else dict(headers or {}),
        )

    async def enqueue(self, message: InboundMessage, priority: Priority,
                      corrects_item_id: Optional[str] = None) -> QueueItem:
        """Add message to the queue; a second enqueue of the same message returns the first item"""
        async with self._acquire("enqueue") as conn:
            async with conn.transaction():
                await conn.execute("""
                    INSERT INTO inbound_messages
                    (message_id, sender, subject, body, thread_id, organization_id, headers, received_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (message_id) DO NOTHING
                """, message.message_id, message.sender, message.subject, message.body,
                    message.thread_id, message.organization_id, json.dumps(message.headers),
                    message.received_at)

                row = await conn.fetchrow("""
                    INSERT INTO queue_items
                    (id, source_message_id, status, priority, priority_rank, max_attempts,
                     organization_id, corrects_item_id, available_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, CURRENT_TIMESTAMP)
                    ON CONFLICT (source_message_id) WHERE corrects_item_id IS NULL DO NOTHING
                    RETURNING *
                """, str(uuid.uuid4()), message.message_id, QueueStatus.PENDING.value,
                    priority.value, priority.rank, self.config.max_attempts,
                    message.organization_id, corrects_item_id)

                if row is None:
                    row = await conn.fetchrow("""
                        SELECT * FROM queue_items
                        WHERE source_message_id = $1 AND corrects_item_id IS NULL
                    """, message.message_id)
                    logger.debug("Message already enqueued", message_id=message.message_id)
                    return self._row_to_item(row)

        item = self._row_to_item(row)
        logger.info("Queue item enqueued", queue_item_id=item.id,
                    message_id=message.message_id, priority=priority.value)
        return item

    async def get(self, item_id: str) -> Optional[QueueItem]:
        async with self._acquire("get") as conn:
            row = await conn.fetchrow("SELECT * FROM queue_items WHERE id = $1", item_id)
        return self._row_to_item(row) if row else None

    async def get_message(self, message_id: str) -> Optional[InboundMessage]:
        async with self._acquire("get_message") as conn:
            row = await conn.fetchrow("SELECT * FROM inbound_messages WHERE message_id = $1", message_id)
        return self._row_to_message(row) if row else None

    async def get_thread_history(self, thread_id: str, before: datetime,
                                 limit: int = 10) -> List[ConversationTurn]:
        async with self._acquire("get_thread_history") as conn:
            rows = await conn.fetch("""
                SELECT m.subject, m.body, m.received_at,
                       (SELECT a.composite_score FROM queue_attempts a
                        WHERE a.queue_item_id = q.id AND a.composite_score IS NOT NULL
                        ORDER BY a.created_at DESC LIMIT 1) AS composite_score
                FROM inbound_messages m
                LEFT JOIN queue_items q
                    ON q.source_message_id = m.message_id AND q.corrects_item_id IS NULL
                WHERE m.thread_id = $1 AND m.received_at < $2
                ORDER BY m.received_at DESC
                LIMIT $3
            """, thread_id, before, limit)

        turns = []
        for row in reversed(rows):
            text = f"{row['subject']}\n\n{row['body']}" if row["subject"] and row["body"] \
                else (row["subject"] or row["body"] or "")
            turns.append(ConversationTurn(
                text=text,
                composite_score=row["composite_score"],
                received_at=row["received_at"],
            ))
        return turns

    async def claim_next(self, worker_id: str, lease_seconds: float) -> Optional[QueueItem]:
        """Claim the highest-priority claimable item; SKIP LOCKED keeps concurrent claimers apart"""
        async with self._acquire("claim_next") as conn:
            row = await conn.fetchrow("""
                UPDATE queue_items
                SET status = 'processing',
                    claimed_by = $1,
                    lease_token = $3,
                    lease_expires_at = CURRENT_TIMESTAMP + make_interval(secs => $2),
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = (
                    SELECT id FROM queue_items
                    WHERE (status = 'pending' AND (available_at IS NULL OR available_at <= CURRENT_TIMESTAMP))
                       OR (status = 'processing' AND lease_expires_at <= CURRENT_TIMESTAMP)
                    ORDER BY priority_rank DESC, created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
            """, worker_id, float(lease_seconds), str(uuid.uuid4()))

        if row is None:
            return None

        item = self._row_to_item(row)
        logger.debug("Queue item claimed", queue_item_id=item.id, worker_id=worker_id,
                     lease_expires_at=item.lease_expires_at.isoformat())
        return item

    async def release(self, item: QueueItem, outcome: ReleaseOutcome,
                      due_at: Optional[datetime] = None,
                      assigned_reviewer: Optional[str] = None) -> QueueItem:
        review = outcome == ReleaseOutcome.REQUIRES_REVIEW
        async with self._acquire("release") as conn:
            row = await conn.fetchrow("""
                UPDATE queue_items
                SET status = $3, claimed_by = NULL, lease_token = NULL, lease_expires_at = NULL,
                    due_at = $4, assigned_reviewer = $5, updated_at = CURRENT_TIMESTAMP
                WHERE id = $1 AND lease_token = $2 AND status = 'processing'
                RETURNING *
            """, item.id, item.lease_token, outcome.value,
                due_at if review else None, assigned_reviewer if review else None)

        if row is None:
            raise LeaseLostError(f"Lease on {item.id} is no longer held by {item.claimed_by}")

        logger.info("Queue item released", queue_item_id=item.id, status=outcome.value)
        return self._row_to_item(row)

    async def mark_failed(self, item: QueueItem, error: str, terminal: bool = False) -> QueueItem:
        async with self._acquire("mark_failed") as conn:
            row = await conn.fetchrow("""
                UPDATE queue_items
                SET attempts = attempts + 1,
                    last_error = $3,
                    claimed_by = NULL,
                    lease_token = NULL,
                    lease_expires_at = NULL,
                    updated_at = CURRENT_TIMESTAMP,
                    status = CASE WHEN $6 OR attempts + 1 >= max_attempts THEN 'failed' ELSE 'pending' END,
                    available_at = CASE
                        WHEN $6 OR attempts + 1 >= max_attempts THEN NULL
                        ELSE CURRENT_TIMESTAMP + make_interval(secs => LEAST($4 * power(2, attempts), $5))
                    END
                WHERE id = $1 AND lease_token = $2 AND status = 'processing'
                RETURNING *
            """, item.id, item.lease_token, error,
                float(self.config.backoff_base_seconds), float(self.config.backoff_max_seconds), terminal)

        if row is None:
            raise LeaseLostError(f"Lease on {item.id} is no longer held by {item.claimed_by}")

        failed = self._row_to_item(row)
        logger.warning("Queue item attempt failed", queue_item_id=failed.id,
                       attempts=failed.attempts, status=failed.status.value, error=error)
        return failed

    async def list_requiring_review(self, review_filter: Optional[ReviewFilter] = None) -> List[QueueItem]:
        review_filter = review_filter or ReviewFilter()
        conditions = ["status = 'requires_review'"]
        params: List[Any] = []

        if review_filter.organization_id:
            params.append(review_filter.organization_id)
            conditions.append(f"organization_id = ${len(params)}")
        if review_filter.assigned_reviewer:
            params.append(review_filter.assigned_reviewer)
            conditions.append(f"assigned_reviewer = ${len(params)}")
        if review_filter.overdue_only:
            conditions.append("due_at < CURRENT_TIMESTAMP")
        params.append(review_filter.limit)

        async with self._acquire("list_requiring_review") as conn:
            rows = await conn.fetch(f"""
                SELECT * FROM queue_items
                WHERE {' AND '.join(conditions)}
                ORDER BY due_at ASC NULLS LAST, created_at ASC
                LIMIT ${len(params)}
            """, *params)
        return [self._row_to_item(row) for row in rows]

    async def resolve_review(self, item_id: str, outcome: ReviewOutcome) -> QueueItem:
        async with self._acquire("resolve_review") as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "SELECT status FROM queue_items WHERE id = $1 FOR UPDATE", item_id)
                if current is None:
                    raise QueueItemNotFoundError(item_id)
                if current["status"] != QueueStatus.REQUIRES_REVIEW.value:
                    raise InvalidTransitionError(item_id, current["status"], outcome.status.value)

                row = await conn.fetchrow("""
                    UPDATE queue_items SET status = $2, updated_at = CURRENT_TIMESTAMP
                    WHERE id = $1
                    RETURNING *
                """, item_id, outcome.status.value)

                await conn.execute("""
                    INSERT INTO review_decisions
                    (queue_item_id, reviewer_id, approved, diverged, override_verdict, feedback, resolved_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                """, item_id, outcome.reviewer_id, outcome.approved, outcome.diverged,
                    json.dumps(outcome.override_verdict) if outcome.override_verdict else None,
                    outcome.feedback, outcome.resolved_at)

        logger.info("Review resolved", queue_item_id=item_id, status=outcome.status.value,
                    reviewer_id=outcome.reviewer_id, diverged=outcome.diverged)
        return self._row_to_item(row)

    async def record_attempt(self, record: AttemptRecord) -> None:
        async with self._acquire("record_attempt") as conn:
            await conn.execute("""
                INSERT INTO queue_attempts
                (queue_item_id, attempt_number, outcome, composite_score, routing_decision,
                 analysis_summaries, consensus, error)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """, record.queue_item_id, record.attempt_number, record.outcome, record.composite_score,
                json.dumps(record.routing_decision) if record.routing_decision else None,
                json.dumps(list(record.analysis_summaries)),
                json.dumps(record.consensus) if record.consensus else None,
                record.error)

    async def list_attempts(self, item_id: str) -> List[AttemptRecord]:
        async with self._acquire("list_attempts") as conn:
            rows = await conn.fetch("""
                SELECT * FROM queue_attempts WHERE queue_item_id = $1 ORDER BY created_at, id
            """, item_id)

        return [
            AttemptRecord(
                queue_item_id=row["queue_item_id"],
                attempt_number=row["attempt_number"],
                outcome=row["outcome"],
                composite_score=row["composite_score"],
                routing_decision=_load_json(row["routing_decision"]),
                analysis_summaries=tuple(_load_json(row["analysis_summaries"]) or ()),
                consensus=_load_json(row["consensus"]),
                error=row["error"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def list_failed(self, organization_id: Optional[str] = None,
                          limit: int = 100) -> List[QueueItem]:
        async with self._acquire("list_failed") as conn:
            if organization_id:
                rows = await conn.fetch("""
                    SELECT * FROM queue_items
                    WHERE status = 'failed' AND organization_id = $1
                    ORDER BY updated_at DESC
                    LIMIT $2
                """, organization_id, limit)
            else:
                rows = await conn.fetch("""
                    SELECT * FROM queue_items
                    WHERE status = 'failed'
                    ORDER BY updated_at DESC
                    LIMIT $1
                """, limit)
        return [self._row_to_item(row) for row in rows]

    async def queue_stats(self, organization_id: Optional[str] = None) -> QueueStats:
        async with self._acquire("queue_stats") as conn:
            if organization_id:
                rows = await conn.fetch("""
                    SELECT status, COUNT(*) AS count FROM queue_items
                    WHERE organization_id = $1 GROUP BY status
                """, organization_id)
            else:
                rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS count FROM queue_items GROUP BY status")

        counts: Dict[str, int] = {status.value: 0 for status in QueueStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return QueueStats(counts=counts)

    async def reset_failed(self, organization_id: Optional[str] = None) -> int:
        async with self._acquire("reset_failed") as conn:
            result = await conn.execute("""
                UPDATE queue_items
                SET status = 'pending', attempts = 0, available_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP
                WHERE status = 'failed' AND ($1::VARCHAR IS NULL OR organization_id = $1)
            """, organization_id)

        reset = int(result.split()[-1])
        if reset:
            logger.info("Failed queue items reset", count=reset, organization_id=organization_id)
        return reset

    async def cleanup_completed(self, days_to_keep: int) -> int:
        """Clean up old terminal items; failed items stay visible to operators"""
        async with self._acquire("cleanup_completed") as conn:
            result = await conn.execute("""
                DELETE FROM queue_items
                WHERE status IN ('completed', 'approved', 'rejected')
                AND updated_at < CURRENT_TIMESTAMP - make_interval(days => $1)
                AND id NOT IN (SELECT corrects_item_id FROM queue_items WHERE corrects_item_id IS NOT NULL)
            """, days_to_keep)

        deleted = int(result.split()[-1])
        if deleted:
            logger.info("Old queue items cleaned up", deleted=deleted, days_to_keep=days_to_keep)
        return deleted

    async def close(self):
        """Close database connection pool"""
        if self.connection_pool:
            await self.connection_pool.close()
            logger.info("Database connection pool closed")


def _load_json(value):
    if value is None or not isinstance(value, str):
        return value
    return json.loads(value)
