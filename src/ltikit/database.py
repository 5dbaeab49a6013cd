"""
Database engine lifecycle.

The engine and session factory are created inside the application lifespan
so the connection pool belongs to the running event loop.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ltikit.models import Base
from ltikit.settings import get_settings

# Module-level state (initialized in startup)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(database_url: str, echo: bool) -> dict:
    options: dict = {"echo": echo}
    if not database_url.startswith("sqlite"):
        options.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
    return options


async def init_database(database_url: str | None = None, create_tables: bool = False) -> None:
    """
    Initialize the database engine and session factory.

    Call from the FastAPI lifespan (or ``asyncio.run`` in the CLI) so the
    pool is created in the correct event loop.
    """
    global _engine, _session_factory

    settings = get_settings()
    url = database_url or settings.database_url
    _engine = create_async_engine(url, **_engine_options(url, settings.log_level == "DEBUG"))

    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    if create_tables:
        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


async def close_database() -> None:
    """Close the database engine and release all connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory for creating sessions."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _session_factory
