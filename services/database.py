"""
=====================================================
Dynamic AI Calling Platform - Async Database Connection Pool
=====================================================
Provides a shared asyncpg connection pool for the agent repository,
the conversation log and stored custom functions.
"""

import asyncpg
from typing import Optional
from loguru import logger
from config.settings import settings


_pool: Optional[asyncpg.Pool] = None


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS agents (
        id SERIAL PRIMARY KEY,
        agent_id VARCHAR(255) UNIQUE NOT NULL,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        ai_prompt TEXT,
        voice VARCHAR(100),
        model VARCHAR(100) DEFAULT 'gpt-4o-mini',
        llm_provider VARCHAR(50),
        temperature REAL DEFAULT 0.7,
        calendar_event_type_id VARCHAR(100),
        calendar_provider VARCHAR(50),
        enabled_functions JSONB,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id SERIAL PRIMARY KEY,
        call_id VARCHAR(255) NOT NULL,
        role VARCHAR(20) NOT NULL,
        content TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_call_id ON conversations (call_id)",
    """
    CREATE TABLE IF NOT EXISTS custom_functions (
        id SERIAL PRIMARY KEY,
        name VARCHAR(255) UNIQUE NOT NULL,
        description TEXT,
        function_type VARCHAR(50) NOT NULL,
        api_key TEXT,
        event_type_id VARCHAR(100),
        timezone VARCHAR(64) DEFAULT 'UTC',
        parameters JSONB,
        response_template TEXT,
        timeout_seconds REAL,
        max_retries INTEGER,
        is_active BOOLEAN DEFAULT true,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


def database_configured() -> bool:
    return bool(settings.database_url)


async def get_db_pool() -> asyncpg.Pool:
    """
    Get or create the shared asyncpg connection pool.

    Returns:
        asyncpg.Pool: The connection pool
    """
    global _pool
    if _pool is None:
        try:
            _pool = await asyncpg.create_pool(
                dsn=settings.database_url,
                min_size=2,
                max_size=10,
                command_timeout=30,
            )
            logger.info("Database connection pool created successfully")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to create database pool: {e}")
            raise
    return _pool


async def init_schema() -> None:
    """Create tables if missing (call on app startup)."""
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        for statement in SCHEMA:
            await conn.execute(statement)
    logger.info("Database schema ready")


async def close_db_pool():
    """Close the connection pool (call on app shutdown)."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Database connection pool closed")
