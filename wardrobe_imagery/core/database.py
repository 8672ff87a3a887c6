"""
Async SQLModel persistence for wardrobe items.

The API process shares one engine. Celery tasks run on a fresh event loop
per task, so they build their own engine through `build_engine` and
dispose of it when the task ends.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from wardrobe_imagery.core.config import settings
from wardrobe_imagery.modules.items.models import WardrobeItem  # noqa: F401  registers the table


def build_engine(url: str = settings.DATABASE_URL) -> AsyncEngine:
    return create_async_engine(url, pool_pre_ping=True)


def build_session_maker(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
async_session_maker = build_session_maker(engine)


async def create_db_and_tables(bind: AsyncEngine = engine):
    """Create missing tables; existing ones are left untouched."""
    async with bind.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
