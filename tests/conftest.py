from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from worktrack.memory.counters import CounterStore
from worktrack.memory.redis import close_redis, use_redis
from worktrack.schemas.work import Connector, ConnectorType, UserContext
from worktrack.services.connectors import StaticConnectorRegistry
from worktrack.services.db import init_models
from worktrack.services.retention import RetentionScanner
from worktrack.services.work_store import WorkStore
from worktrack.services.works import WorkTrackingEngine

START = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


@pytest.fixture
def clock():
    return Clock()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'works.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    use_redis(client)
    yield client
    await client.flushall()
    await close_redis()


@pytest.fixture
def counters(redis_client):
    # picks up the shared client installed by redis_client
    return CounterStore()


@pytest.fixture
def work_store(db_engine):
    return WorkStore(async_sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession), max_attempts=20)


@pytest.fixture
def export_connector():
    return Connector(id="conn-export", connector_type=ConnectorType.INTERNAL_EXPORT_FILE, name="ExportCsv")


@pytest.fixture
def enrichment_connector():
    return Connector(id="conn-enrich", connector_type=ConnectorType.INTERNAL_ENRICHMENT, name="Enricher")


@pytest.fixture
def import_connector():
    return Connector(id="conn-import", connector_type=ConnectorType.EXTERNAL_IMPORT, name="Feed")


@pytest.fixture
def connectors(export_connector, enrichment_connector, import_connector):
    return StaticConnectorRegistry([export_connector, enrichment_connector, import_connector])


@pytest.fixture
def user():
    return UserContext(id="user-1", name="admin")


@pytest.fixture
def engine(work_store, counters, connectors, clock):
    return WorkTrackingEngine(work_store, counters, connectors, clock=clock)


@pytest.fixture
def scanner(work_store, counters, clock):
    return RetentionScanner(work_store, counters, page_size=2, clock=clock)
