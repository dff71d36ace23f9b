import os

# Set required env vars BEFORE any app imports trigger Settings()
os.environ.setdefault("API_KEY", "test-api-key-for-testing")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("BILLETWEB_API_KEY", "test-billetweb-key")
os.environ.setdefault("BILLETWEB_BACKOFF_BASE_SECONDS", "0")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from catalog_sync.main import app
from catalog_sync.database import Base, get_db
from catalog_sync.models import CatalogItem

TEST_DB = "sqlite+aiosqlite:///:memory:"
TEST_API_KEY = "test-api-key-for-testing"


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(TEST_DB)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fetch_items(session_factory):
    """Reads the catalog through a fresh session, keyed by external id."""
    async def _fetch():
        async with session_factory() as session:
            rows = (await session.execute(select(CatalogItem))).scalars().all()
            return {row.external_id: row for row in rows}
    return _fetch


@pytest_asyncio.fixture
async def client(session_factory):
    from catalog_sync.services.coordinator import RunCoordinator
    from fakes import FakeBilletweb, RecordingSink, make_record

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.coordinator = RunCoordinator(
        session_factory,
        FakeBilletweb([make_record("A1"), make_record("A2")]),
        sink=RecordingSink(),
        run_timeout=5,
    )
    app.state.scheduler = None

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-API-Key": TEST_API_KEY},
    ) as c:
        yield c

    app.dependency_overrides.clear()
    app.state.coordinator = None
