"""
Database utilities and connection management
"""

import os
from datetime import datetime, timezone
from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator
from typing import AsyncGenerator, Optional

# Database URL from environment
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+asyncpg://localhost:5432/turbomerch_db")


def build_engine(url: str = DATABASE_URL, **kwargs) -> AsyncEngine:
    """Create an async engine with the pool settings used across the service"""
    if url.startswith("sqlite"):
        return create_async_engine(url, **kwargs)
    return create_async_engine(
        url,
        echo=os.getenv("DEBUG", "false").lower() == "true",
        pool_pre_ping=True,
        pool_recycle=300,
        **kwargs,
    )


# Create async engine
engine = build_engine()

# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_async_session():
    """Get async database session context manager"""
    return AsyncSessionLocal()


async def create_tables(bind: Optional[AsyncEngine] = None):
    """Create all database tables"""
    async with (bind or engine).begin() as conn:
        # Import all models to ensure they're registered
        from turbomerch.models import (
            user, usage, generation_event, pending_credit, billing_ledger
        )
        await conn.run_sync(Base.metadata.create_all)


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always hands back UTC datetimes.

    SQLite drops tzinfo on the way out, so naive values read back are
    treated as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)
