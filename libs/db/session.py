from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from libs.db.config import AsyncSessionLocal


async def get_async_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency; services commit their own work."""
    async with session_scope() as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    Session for request handlers and background jobs alike.

    Work not yet committed when the block raises is rolled back. Rows that
    were already committed stay: a renewal commits its pending transaction
    before calling the gateway, and the next run's pending-transaction check
    skips that subscription until the webhook settles it.
    """
    session = AsyncSessionLocal()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
