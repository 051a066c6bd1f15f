# jobsync/core/database_engine.py

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from functools import lru_cache


def to_async_url(database_url: str) -> str:
    """Convert sqlite:/// to sqlite+aiosqlite:///"""
    if database_url.startswith("sqlite:///"):
        return database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return database_url


@lru_cache()
def get_database_engine(database_url: str) -> AsyncEngine:
    """Create and cache async database engine"""
    database_url = to_async_url(database_url)

    engine_kwargs = {"echo": False}
    if "sqlite" in database_url:
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        # one shared connection keeps sqlite :memory: databases alive
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs.update(
            {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_pre_ping": True,
            }
        )

    return create_async_engine(database_url, **engine_kwargs)


@lru_cache()
def get_session_maker(database_url: str) -> async_sessionmaker:
    """Create and cache async session maker"""
    engine = get_database_engine(database_url)
    return async_sessionmaker(engine, expire_on_commit=False)
