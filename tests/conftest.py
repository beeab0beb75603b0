
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from trackpro.main import app
from trackpro.config import Settings
from trackpro.database import Base, get_db
from trackpro.models.job import Job

from tests.factories import TECHNICIAN_ID, JobFactory

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"


@pytest_asyncio.fixture
async def test_sessions():
    """Create test database and tables; yields the session factory."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    yield async_session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(test_sessions):
    async with test_sessions() as session:
        yield session


@pytest_asyncio.fixture
async def test_job(test_db: AsyncSession):
    """Create an en-route job assigned to TECHNICIAN_ID."""
    job = Job(**JobFactory(technician_id=TECHNICIAN_ID, status="en_route"))
    test_db.add(job)
    await test_db.commit()
    await test_db.refresh(job)
    return job


@pytest_asyncio.fixture
async def client(test_db: AsyncSession):
    """Create test client with overridden database."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def technician_client(client: AsyncClient):
    """Client that identifies as TECHNICIAN_ID."""
    client.headers["X-Technician-Id"] = TECHNICIAN_ID
    return client


@pytest.fixture
def test_settings():
    """Settings with no backoff delays so watch restarts run immediately."""
    return Settings(
        SENSOR_TIMEOUT_BACKOFF_SECONDS=0,
        SENSOR_UNAVAILABLE_BACKOFF_SECONDS=0,
        OFFLINE_QUEUE_PATH=None,
    )


