"""
Shared fixtures: an in-memory SQLite database per test and a complete SIS
credential set.
"""

from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from reportcard.core.database import create_engine_for, init_db
from reportcard.integrations.sis.credential_store import CredentialStore
from reportcard.integrations.sis.token_manager import SISTokenManager

ENDPOINT = "https://sis.example.edu"
NOW = datetime(2024, 9, 2, 8, 0, 0)


def fixed_clock():
    return NOW


@pytest_asyncio.fixture
async def engine():
    """In-memory database shared by every session of one test."""
    test_engine = create_engine_for(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def credential_store(session_factory):
    """Credential store holding a complete credential set and no token."""
    store = CredentialStore(session_factory)
    await store.update(endpoint=ENDPOINT + "/", client_id="portal-client", client_secret="s3cret")
    return store


@pytest.fixture
def token_manager(credential_store):
    return SISTokenManager(credential_store, clock=fixed_clock)
