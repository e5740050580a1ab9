from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from prflow.config import settings
import structlog

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _get_db_url() -> str:
    """Strip sslmode from URL since asyncpg uses connect_args for SSL."""
    url = settings.DATABASE_URL
    url = url.replace("?sslmode=require", "").replace("&sslmode=require", "")
    return url


def _engine_kwargs() -> dict:
    if settings.is_sqlite:
        # SQLite waits on its own file lock; bound it by the store timeout
        return {
            "echo": settings.DEBUG,
            "connect_args": {"timeout": settings.STORE_TIMEOUT_SECONDS},
        }

    connect_args: dict = {
        "timeout": settings.STORE_TIMEOUT_SECONDS,
        "command_timeout": settings.STORE_TIMEOUT_SECONDS,
    }
    if settings.DB_SSL_REQUIRE:
        connect_args["ssl"] = "require"
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
        "echo": settings.DEBUG,
        "connect_args": connect_args,
    }


engine: AsyncEngine = create_async_engine(_get_db_url(), **_engine_kwargs())

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency: the factory the Request Store opens sessions from."""
    return AsyncSessionLocal


async def init_db():
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        if settings.is_sqlite:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("db_connected", sqlite=settings.is_sqlite)


async def close_db():
    await engine.dispose()
    logger.info("db_disconnected")
