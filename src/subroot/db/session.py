"""
Subscription Root Service - Database Session

Async database session management with connection pooling.
"""

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from subroot.core.config import settings

logger = structlog.get_logger(__name__)

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_POOL_MAX_OVERFLOW,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=settings.DEBUG,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db() -> None:
    """Initialize database connection pool and verify connectivity."""
    logger.info(
        "Initializing database connection",
        host=settings.DB_HOST,
        database=settings.DB_NAME,
    )
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

    await _ensure_tables()

    logger.info("Database connection verified")


async def _ensure_tables() -> None:
    """Ensure subscriber and root-state tables exist."""
    async with async_session_factory() as session:
        await session.execute(text("""
            CREATE TABLE IF NOT EXISTS subscriber_storage (
                identity VARCHAR(64) PRIMARY KEY,
                expiration_ts BIGINT NOT NULL,
                last_updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """))

        await session.execute(text("""
            CREATE TABLE IF NOT EXISTS merkle_state (
                id SERIAL PRIMARY KEY,
                root_hash VARCHAR(64) NOT NULL,
                is_synced_on_chain BOOLEAN NOT NULL DEFAULT FALSE,
                tx_signature VARCHAR(128),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """))

        await session.execute(text("""
            CREATE INDEX IF NOT EXISTS idx_merkle_state_synced
            ON merkle_state(is_synced_on_chain, id DESC)
        """))

        await session.commit()

    logger.info("Subscription tables verified")


async def close_db() -> None:
    """Close database connections gracefully."""
    await engine.dispose()
    logger.info("Database connections closed")

