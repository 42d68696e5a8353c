from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings

engine = create_async_engine(
    settings.postgres_url,
    echo=False,
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, rolled back on error."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def make_session_factory(pool_size: int = 10, max_overflow: int = 10):
    """Create a fresh async engine + session factory.

    The module-level engine is bound to uvicorn's event loop and cannot be reused
    from a Celery worker, which runs each task in a new event loop.
    Returns ``(session_factory, engine)``; callers dispose the engine when done.
    """
    worker_engine = create_async_engine(
        settings.postgres_url,
        echo=False,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )
    return async_sessionmaker(worker_engine, class_=AsyncSession, expire_on_commit=False), worker_engine
