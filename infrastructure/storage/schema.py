# infrastructure/storage/schema.py
"""PostgreSQL schema shared by the queue store, learning repository and setup script."""

TABLE_STATEMENTS = [
    ("inbound_messages", """
        CREATE TABLE IF NOT EXISTS inbound_messages (
            message_id VARCHAR(255) PRIMARY KEY,
            sender VARCHAR(320) NOT NULL,
            subject TEXT NOT NULL DEFAULT '',
            body TEXT NOT NULL DEFAULT '',
            thread_id VARCHAR(255),
            organization_id VARCHAR(64),
            headers JSONB DEFAULT '{}',
            received_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """),
    ("queue_items", """
        CREATE TABLE IF NOT EXISTS queue_items (
            id VARCHAR(36) PRIMARY KEY,
            source_message_id VARCHAR(255) NOT NULL REFERENCES inbound_messages(message_id),
            status VARCHAR(20) NOT NULL,
            priority VARCHAR(10) NOT NULL,
            priority_rank SMALLINT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL,
            last_error TEXT,
            assigned_reviewer VARCHAR(255),
            due_at TIMESTAMPTZ,
            claimed_by VARCHAR(255),
            lease_token VARCHAR(36),
            lease_expires_at TIMESTAMPTZ,
            available_at TIMESTAMPTZ,
            organization_id VARCHAR(64),
            corrects_item_id VARCHAR(36) REFERENCES queue_items(id),
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            CONSTRAINT processing_has_lease CHECK (
                status <> 'processing' OR (claimed_by IS NOT NULL AND lease_token IS NOT NULL
                                             AND lease_expires_at IS NOT NULL)
            )
        )
    """),
    ("queue_attempts", """
        CREATE TABLE IF NOT EXISTS queue_attempts (
            id SERIAL PRIMARY KEY,
            queue_item_id VARCHAR(36) NOT NULL REFERENCES queue_items(id) ON DELETE CASCADE,
            attempt_number INTEGER NOT NULL,
            outcome VARCHAR(30) NOT NULL,
            composite_score FLOAT,
            routing_decision JSONB,
            analysis_summaries JSONB DEFAULT '[]',
            consensus JSONB,
            error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """),
    ("review_decisions", """
        CREATE TABLE IF NOT EXISTS review_decisions (
            id SERIAL PRIMARY KEY,
            queue_item_id VARCHAR(36) NOT NULL REFERENCES queue_items(id) ON DELETE CASCADE,
            reviewer_id VARCHAR(255) NOT NULL,
            approved BOOLEAN NOT NULL,
            diverged BOOLEAN NOT NULL DEFAULT FALSE,
            override_verdict JSONB,
            feedback TEXT,
            resolved_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """),
    ("circuit_breaker_state", """
        CREATE TABLE IF NOT EXISTS circuit_breaker_state (
            resource_name VARCHAR(100) PRIMARY KEY,
            state VARCHAR(20) NOT NULL,
            failure_count INTEGER DEFAULT 0,
            last_failure_time TIMESTAMPTZ,
            success_count INTEGER DEFAULT 0,
            updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
        )
    """),
    ("analyzer_performance", """
        CREATE TABLE IF NOT EXISTS analyzer_performance (
            analyzer_kind VARCHAR(30) NOT NULL,
            model_tier VARCHAR(20) NOT NULL,
            samples INTEGER NOT NULL DEFAULT 0,
            successes INTEGER NOT NULL DEFAULT 0,
            overrides INTEGER NOT NULL DEFAULT 0,
            confidence_sum FLOAT NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (analyzer_kind, model_tier)
        )
    """),
    ("tier_adjustments", """
        CREATE TABLE IF NOT EXISTS tier_adjustments (
            task_shape VARCHAR(20) NOT NULL,
            model_tier VARCHAR(20) NOT NULL,
            samples INTEGER NOT NULL DEFAULT 0,
            overrides INTEGER NOT NULL DEFAULT 0,
            preferred_higher INTEGER NOT NULL DEFAULT 0,
            preferred_lower INTEGER NOT NULL DEFAULT 0,
            adjustment FLOAT NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (task_shape, model_tier)
        )
    """),
]

# Columns added after the first release; CREATE TABLE IF NOT EXISTS leaves older tables untouched
COLUMN_STATEMENTS = [
    "ALTER TABLE queue_items ADD COLUMN IF NOT EXISTS lease_token VARCHAR(36)",
]

INDEX_STATEMENTS = [
    "CREATE INDEX IF NOT EXISTS idx_queue_claim ON queue_items(status, priority_rank DESC, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_queue_due ON queue_items(due_at) WHERE status = 'requires_review'",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_source_message ON queue_items(source_message_id) "
    "WHERE corrects_item_id IS NULL",
    "CREATE INDEX IF NOT EXISTS idx_queue_org ON queue_items(organization_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_thread ON inbound_messages(thread_id, received_at)",
    "CREATE INDEX IF NOT EXISTS idx_attempts_item ON queue_attempts(queue_item_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_reviews_item ON review_decisions(queue_item_id)",
]


async def create_schema(conn) -> None:
    """Create all tables and indexes on an open asyncpg connection"""
    for _, statement in TABLE_STATEMENTS:
        await conn.execute(statement)
    for statement in COLUMN_STATEMENTS:
        await conn.execute(statement)
    for statement in INDEX_STATEMENTS:
        await conn.execute(statement)
