from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from worktrack.core.config import settings
from worktrack.models.base import Base

# Importing the model registers the works table on Base.metadata
from worktrack.models import work as _work_model  # noqa: F401

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(settings.DATABASE_URL, echo=False, pool_pre_ping=True)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False, class_=AsyncSession)
    return _session_factory


async def init_models(engine: AsyncEngine | None = None):
    # Alembic is authoritative in deployments; this is for dev and tests.
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
