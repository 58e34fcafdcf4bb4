"""
Async SQLAlchemy engine for the ``kv_store`` table.

The web process shares one pooled engine.  Celery tasks run each coroutine on
a fresh event loop and asyncpg connections cannot cross loops, so they build
their own small engine with ``create_engine`` and dispose it afterwards.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from donorlink.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    pass


def create_engine(pool_size: int | None = None, max_overflow: int | None = None) -> AsyncEngine:
    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_size=pool_size if pool_size is not None else settings.DATABASE_POOL_SIZE,
        max_overflow=max_overflow if max_overflow is not None else settings.DATABASE_MAX_OVERFLOW,
    )


def session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = create_engine()

async_session = session_factory(engine)
