"""Database engine and session management.

The engine and session factory are created once per process by
``product_kb.resources.Resources`` and handed to every component; nothing
in the package opens its own engine.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from product_kb.config import settings

SessionFactory = async_sessionmaker[AsyncSession]


def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Set SQLite pragmas for better concurrency.

    WAL mode lets searches read while a sync or cluster run is writing.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_engine(url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create the async engine for the given URL (defaults to settings)."""
    database_url = url or settings.DATABASE_URL
    engine = create_async_engine(
        database_url,
        echo=settings.DEBUG if echo is None else echo,
    )

    if database_url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)

    return engine


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create a session factory bound to the engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    from product_kb.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
