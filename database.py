"""
Database Configuration and Session Management
============================================

Async engine and session factory for the off-ramp ledger. The engine is built
on first use from Config.DATABASE_URL, or explicitly through init_engine() by
the server, the CLI and the test suite.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from config import Config
from models import Base
from utils.offramp_errors import ConfigurationError

logger = logging.getLogger(__name__)

_async_engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker] = None


def to_async_url(database_url: str) -> str:
    """Map a plain DATABASE_URL onto its async driver"""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        for mode in ("require", "prefer", "disable"):
            database_url = database_url.replace(f"sslmode={mode}", f"ssl={mode}")
    elif database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def init_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """Create (or replace) the process-wide async engine and session factory"""
    global _async_engine, AsyncSessionLocal

    url = database_url or Config.DATABASE_URL
    if not url:
        raise ConfigurationError("DATABASE_URL environment variable is required")
    url = to_async_url(url)

    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo, connect_args={"timeout": 30})
    else:
        engine = create_async_engine(
            url,
            pool_size=5,           # Async base pool
            max_overflow=10,       # Burst capacity for webhook spikes
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,       # Wait max 30 seconds for a connection
            echo=echo,
            connect_args={
                "server_settings": {"application_name": "offramp_settlement"},
                "timeout": 10,
                "command_timeout": 30,
            },
        )

    _async_engine = engine
    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False  # Rows are read after commit outside the session
    )
    logger.info(f"✅ DATABASE: async engine ready ({engine.url.get_backend_name()})")
    return engine


def get_engine() -> AsyncEngine:
    if _async_engine is None:
        init_engine()
    return _async_engine


@asynccontextmanager
async def get_async_session():
    """
    Async context manager for ledger sessions.

    Commits on clean exit, rolls back and re-raises on error. Keep the block
    short: never await a chain RPC or provider HTTP call inside it.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(select(OfframpTransaction).where(...))
    """
    if AsyncSessionLocal is None:
        init_engine()
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables():
    """Create all database tables if they don't exist"""
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"✅ Database schema verified: {len(Base.metadata.tables)} tables")


async def dispose_engine():
    global _async_engine, AsyncSessionLocal
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    AsyncSessionLocal = None
