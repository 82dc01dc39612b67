# tests/conftest.py — Shared test fixtures
import os
import asyncio

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("ADMIN_API_KEY", None)

from models import Base
from board_service import BoardService
from database import get_db_session, create_engine_for, create_session_factory
from events import EventBus
from main import app


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path}/board.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def event_bus():
    bus = EventBus()
    yield bus
    bus.close()


@pytest.fixture
def write_lock():
    return asyncio.Lock()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def service(db_session, event_bus, write_lock):
    return BoardService(db_session, event_bus, write_lock)


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, event_bus, write_lock):
    """HTTP test client with overridden DB dependency and runtime state"""
    # ASGITransport does not run the lifespan
    app.state.session_factory = session_factory
    app.state.event_bus = event_bus
    app.state.write_lock = write_lock

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def admin_key(service):
    return await service.get_or_create_admin_key()


@pytest_asyncio.fixture
async def test_agent(service):
    """Registered agent (with api_key)"""
    return await service.create_agent("test-agent")


@pytest_asyncio.fixture
async def other_agent(service):
    return await service.create_agent("other-agent")


@pytest_asyncio.fixture
async def test_project(service):
    return await service.create_project("Test Project", "Fixture project")


def admin_headers(key: str) -> dict:
    return {"X-Admin-Key": key}


def agent_headers(agent) -> dict:
    return {"X-Api-Key": agent.api_key}
