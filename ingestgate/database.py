from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ingestgate.config import Settings
from ingestgate.db_models import Base


def build_engine(settings: Settings) -> AsyncEngine:
    engine_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        # Concurrent batches share one file; wait for the writer instead of failing.
        engine_args["connect_args"] = {"timeout": 30}
    else:
        engine_args["pool_size"] = settings.db_pool_size
        engine_args["pool_pre_ping"] = True
    return create_async_engine(settings.database_url, **engine_args)


async def init_models(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


async def get_db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as db:
        yield db
