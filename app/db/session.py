from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from app.config.settings import settings

engine = create_async_engine(
    str(settings.DATABASE_URL),
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=False,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get async database session"""
    async with AsyncSessionLocal() as db:
        try:
            yield db
        except Exception:
            await db.rollback()
            raise


@asynccontextmanager
async def session_scope(
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Session for a background job.

    Without a factory a throwaway NullPool engine is used: Celery tasks call
    `asyncio.run` per execution and pooled connections cannot outlive their loop.
    """
    if session_factory is not None:
        async with session_factory() as db:
            yield db
        return

    task_engine = create_async_engine(str(settings.DATABASE_URL), poolclass=NullPool)
    try:
        task_session_factory = async_sessionmaker(
            bind=task_engine, class_=AsyncSession, expire_on_commit=False
        )
        async with task_session_factory() as db:
            yield db
    finally:
        await task_engine.dispose()
