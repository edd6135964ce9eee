from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from libs.db.config import AsyncSessionLocal


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields an async database session.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """
    Create any missing tables. Local/development convenience only.
    """
    from libs.db.base import Base
    from libs.db.config import engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
