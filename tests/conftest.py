"""
tests/conftest.py
Shared fixtures: frozen business clock, in-memory and SQLite-backed
containers, and an httpx client bound to the app.
"""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import build_session_factory, init_db
from shared.dependencies import memory_container, sql_container
from tests.factories import START, FrozenClock


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def container(clock):
    return memory_container(now=clock, retry_backoff=0)


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def sql_store(session_factory, clock):
    return sql_container(session_factory, now=clock, retry_backoff=0)


@pytest.fixture
async def client(container):
    from main import app

    app.state.container = container
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

