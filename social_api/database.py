"""
Async database engine and sessions (SQLAlchemy 2.0 + aiosqlite).
The app builds one engine per lifespan and keeps it on app.state.
"""
from collections.abc import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from social_api.config import DATABASE_URL
from social_api.models import Base


def build_engine(url: str = DATABASE_URL) -> AsyncEngine:
    # In-memory SQLite needs StaticPool so all sessions share the same DB (tests)
    if ":memory:" in url:
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    connect_args = {"check_same_thread": False} if "sqlite" in url else {}
    return create_async_engine(url, connect_args=connect_args)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency: yield a DB session from the app's session factory."""
    async with request.app.state.session_factory() as session:
        yield session
