"""
Database connection and session management.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from schoolsync.core.config import get_settings

settings = get_settings()


def build_engine(database_url: str, *, echo: bool = False, **kwargs) -> AsyncEngine:
    """Create an async engine for the given URL (asyncpg or aiosqlite)."""
    return create_async_engine(database_url, echo=echo, future=True, **kwargs)


def build_session_factory(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = build_engine(settings.database_url, echo=settings.debug)

async_session_factory = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables (development only; production uses migrations)."""
    import schoolsync.models  # noqa: F401  populate metadata

    async with (bind or engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def ping_db(factory: sessionmaker | None = None) -> bool:
    """Return True if the database answers a trivial query."""
    async with (factory or async_session_factory)() as session:
        await session.execute(text("SELECT 1"))
    return True

