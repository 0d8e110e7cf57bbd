# scripts/setup_database.py
"""
Database setup script for the inbound triage engine.
Creates all required tables, indexes and triggers.
"""

import asyncio
import os
import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import asyncpg
from dotenv import load_dotenv

from infrastructure.storage.schema import INDEX_STATEMENTS, TABLE_STATEMENTS, create_schema
from shared.logging import logger, setup_logging


async def create_database_if_not_exists(admin_url: str, database_name: str):
    """Create database if it doesn't exist"""
    admin_conn = await asyncpg.connect(admin_url)
    try:
        db_exists = await admin_conn.fetchval(
            "SELECT 1 FROM pg_database WHERE datname = $1", database_name
        )

        if not db_exists:
            await admin_conn.execute(f'CREATE DATABASE "{database_name}"')
            logger.info("Created database", database=database_name)
        else:
            logger.info("Database already exists", database=database_name)
    finally:
        await admin_conn.close()


async def setup_tables(database_url: str):
    """Create all required tables, indexes and timestamp triggers"""

    conn = await asyncpg.connect(database_url)

    try:
        logger.info("Creating database tables")
        await create_schema(conn)
        logger.info("Created tables and indexes",
                    tables=len(TABLE_STATEMENTS), indexes=len(INDEX_STATEMENTS))

        await conn.execute("""
            CREATE OR REPLACE FUNCTION update_updated_at_column()
            RETURNS TRIGGER AS $$
            BEGIN
                NEW.updated_at = CURRENT_TIMESTAMP;
                RETURN NEW;
            END;
            $$ language 'plpgsql'
        """)

        await conn.execute("""
            DROP TRIGGER IF EXISTS update_queue_items_updated_at ON queue_items;
            CREATE TRIGGER update_queue_items_updated_at
                BEFORE UPDATE ON queue_items
                FOR EACH ROW
                EXECUTE FUNCTION update_updated_at_column()
        """)

        logger.info("Created automatic timestamp triggers")

    finally:
        await conn.close()


async def verify_setup(database_url: str):
    """Verify the database setup is working correctly"""

    conn = await asyncpg.connect(database_url)

    try:
        logger.info("Verifying database setup")

        tables = await conn.fetch("""
            SELECT table_name FROM information_schema.tables
            WHERE table_schema = 'public'
        """)

        expected_tables = {name for name, _ in TABLE_STATEMENTS}
        found_tables = {row['table_name'] for row in tables}

        missing = expected_tables - found_tables
        if missing:
            raise RuntimeError(f"Missing tables: {sorted(missing)}")
        logger.info("All tables found", count=len(expected_tables))

        indexes = await conn.fetch("""
            SELECT indexname FROM pg_indexes
            WHERE schemaname = 'public'
            AND indexname LIKE 'idx_%'
        """)
        if len(indexes) < len(INDEX_STATEMENTS):
            logger.warning("Fewer indexes than expected",
                           expected=len(INDEX_STATEMENTS), found=len(indexes))

        test_message_id = 'setup-verification'
        async with conn.transaction():
            await conn.execute("""
                INSERT INTO inbound_messages (message_id, sender, subject, body)
                VALUES ($1, 'setup@localhost', 'verification', '')
                ON CONFLICT (message_id) DO NOTHING
            """, test_message_id)

            found = await conn.fetchval(
                "SELECT 1 FROM inbound_messages WHERE message_id = $1", test_message_id)
            if not found:
                raise RuntimeError("Failed to insert/query test record")

            await conn.execute("DELETE FROM inbound_messages WHERE message_id = $1", test_message_id)

        logger.info("Basic database operations working")

    finally:
        await conn.close()


async def main():
    """Main setup function"""

    load_dotenv()
    setup_logging(level="INFO", json_logs=False)

    logger.info("Starting inbound triage database setup")

    database_url = os.getenv("DATABASE_URL")

    if not database_url:
        # Default local development setup
        host = os.getenv("DB_HOST", "localhost")
        port = os.getenv("DB_PORT", "5432")
        user = os.getenv("DB_USER", "postgres")
        password = os.getenv("DB_PASSWORD", "postgres")
        database = os.getenv("DB_NAME", "triage")

        database_url = f"postgresql://{user}:{password}@{host}:{port}/{database}"
        admin_url = f"postgresql://{user}:{password}@{host}:{port}/postgres"

        logger.info("Using local database", host=host, port=port, database=database)

        try:
            await create_database_if_not_exists(admin_url, database)
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning("Could not create database (may already exist)", error=str(e))

    try:
        await setup_tables(database_url)
        await verify_setup(database_url)
        logger.info("Database setup completed successfully")

    except Exception as e:
        logger.error("Database setup failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
