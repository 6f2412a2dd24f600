from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from procircle.core.config import settings


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # Ledger writes must not land on a connection PostgreSQL already dropped.
    return {"pool_pre_ping": True}


engine = create_async_engine(settings.database_url, future=True, echo=False, **_engine_options(settings.database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Request-scoped session; services commit their own units of work."""
    async with SessionLocal() as session:
        yield session
