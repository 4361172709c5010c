"""Database utilities for the SQL token store backend."""
from __future__ import annotations

from sqlalchemy.ext.asyncio import (AsyncEngine, async_sessionmaker,
                                    create_async_engine)

from app.core.config import get_settings
from app.models import Base

settings = get_settings()

engine: AsyncEngine = create_async_engine(settings.async_database_url, future=True)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def create_tables() -> None:
    """Create the token table if it does not exist yet."""
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
