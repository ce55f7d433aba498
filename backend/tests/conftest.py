"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/catalog_test_config"

# Ensure test config directory exists
Path("/tmp/catalog_test_config").mkdir(parents=True, exist_ok=True)

from database import Base
from models import Source, CatalogEntry, Grouping, Episode, TaskExecution  # noqa: F401 - registers tables

from tests.fixtures.mock_feed import mock_feed_router, mock_feed  # noqa: F401, E402 - shared fixtures


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the test engine."""
    # expire_on_commit=False allows accessing object attributes after commit/close
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def patched_database(test_engine, session_factory):
    """Point database.get_session()/get_engine() at the test engine."""
    import database

    original_session_local = database._SessionLocal
    original_engine = database._engine
    database._SessionLocal = session_factory
    database._engine = test_engine
    try:
        yield
    finally:
        database._SessionLocal = original_session_local
        database._engine = original_engine


@pytest.fixture(scope="function")
def sql_store(session_factory):
    """SqlCatalogStore bound to the test engine."""
    from catalog_store import SqlCatalogStore
    return SqlCatalogStore(session_factory=session_factory)


@pytest.fixture(scope="function")
def fake_store():
    """Fresh in-memory CatalogStore."""
    from tests.fixtures.fake_store import InMemoryCatalogStore
    return InMemoryCatalogStore()


@pytest.fixture(scope="function")
def catalog_settings(monkeypatch):
    """Install in-memory settings pointing at the mock feed."""
    import config
    from tests.fixtures.mock_feed import MOCK_FEED_URL, MOCK_API_KEY

    settings = config.CatalogSettings(
        feed_api_url=MOCK_FEED_URL,
        feed_api_key=MOCK_API_KEY,
        sources=[config.SourceConfig(source_id="UC_TEST", display_name="Test Channel")],
        group_delay_seconds=0,
    )
    monkeypatch.setattr(config, "_cached_settings", settings)
    yield settings
    config.clear_settings_cache()


@pytest.fixture(scope="function")
def fresh_registry():
    """Drop task instances so each test starts from idle tasks."""
    from task_registry import get_registry
    import tasks  # noqa: F401 - registers scheduled tasks

    registry = get_registry()
    registry.reset()
    yield registry
    registry.reset()


@pytest.fixture(scope="function")
async def async_client(patched_database):
    """
    Create an async test client for the FastAPI app.
    Database access goes to the in-memory test engine.
    """
    from httpx import AsyncClient, ASGITransport
    from main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
