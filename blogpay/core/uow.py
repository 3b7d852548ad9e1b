from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from blogpay.core.database import DatabaseManager


class UnitOfWork:
    """
    Session lifecycle for background work (Celery tasks, sweeps).

    Each task run gets its own engine because every `asyncio.run` call owns a
    fresh event loop and pooled connections cannot cross loops.
    """

    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        self._manager: Optional[DatabaseManager] = None
        if session_factory is None:
            self._manager = DatabaseManager()
            session_factory = self._manager.async_session_maker
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        finally:
            if self._manager is not None:
                await self._manager.close()
