"""
scifair/database.py
Async database engine, session factory and schema initialization
"""
import os
import logging

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Importing the package registers every model on Base.metadata
from scifair.orm import Base

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./scifair.db")

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is not set")


def build_engine(database_url: str = DATABASE_URL):
    """Create an async engine with pool settings suited to the dialect."""
    if "sqlite" in database_url.lower():
        # SQLite: busy timeout so concurrent writers wait instead of failing
        return create_async_engine(
            database_url,
            echo=False,
            future=True,
            connect_args={
                "timeout": 30.0,
            }
        )
    # PostgreSQL: standard pool with recycling
    return create_async_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
    )


def build_sessionmaker(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = build_engine()
AsyncSessionLocal = build_sessionmaker(engine)


async def get_db():
    """Dependency for getting async database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind=None):
    """Create all engine tables that do not exist yet."""
    bind = bind or engine
    logger.info("Initializing database...")

    try:
        logger.info(f"Database dialect: {bind.url.get_backend_name()}")
        if bind.url.get_backend_name() == "sqlite":
            logger.warning("Running on SQLite: JSONB downgraded to JSON, row locks are no-ops.")

        async with bind.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("✓ Database initialization complete")

    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise


async def close_db():
    """Close database connection"""
    await engine.dispose()
    logger.info("Database connection closed")
