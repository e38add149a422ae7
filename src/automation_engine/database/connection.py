from typing import AsyncIterator, Optional
from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from automation_engine.config.logging import get_logger
from automation_engine.models.flow_execution import Base

logger = get_logger("database")


class Database:
    """Explicit handle on the execution store.

    Created once at process start, passed into the scheduler, dispatcher and
    worker, and disposed at shutdown.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    def _engine_options(self) -> dict:
        options = {"echo": self.echo, "future": True, "pool_pre_ping": True}
        if not self.database_url.startswith("sqlite"):
            # Connection pool configuration for better concurrency
            options.update(
                pool_size=20,
                max_overflow=40,
                pool_recycle=3600,
                pool_timeout=30,
            )
        return options

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, **self._engine_options())
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )
        return self._session_factory

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def init_db(self) -> None:
        """Create tables if they don't exist."""
        # Import all models to ensure they're registered with SQLAlchemy
        from automation_engine.models import automation  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized", url=self.engine.url.render_as_string(hide_password=True))

    async def ping(self) -> bool:
        async with self.session() as session:
            await session.execute(text("SELECT 1"))
        return True

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connections closed")


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    database: Database = request.app.state.database
    async with database.session() as session:
        try:
            yield session
        finally:
            await session.close()
