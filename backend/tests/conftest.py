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
os.environ["CONFIG_DIR"] = "/tmp/ingest_test_config"

# Ensure test config directory exists
Path("/tmp/ingest_test_config").mkdir(parents=True, exist_ok=True)

from database import Base
from models import Playlist, Category, Channel, EpgFile, ChannelLineup, IngestJob  # noqa: F401


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    # Create all tables
    Base.metadata.create_all(bind=engine)
    yield engine
    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the test engine, as passed to JobService."""
    # expire_on_commit=False allows accessing object attributes after commit/close
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def artifact_dir(tmp_path, monkeypatch):
    """Redirect on-disk job artifacts into a per-test directory."""
    import job_store
    directory = tmp_path / "artifacts"
    monkeypatch.setattr(job_store, "ARTIFACT_DIR", directory)
    return directory


@pytest.fixture(scope="function")
async def async_client(test_session, test_engine):
    """
    Create an async test client for the FastAPI app.
    Patches database module internals for endpoints that call get_session() directly.
    """
    from httpx import AsyncClient, ASGITransport
    import database
    from main import app
    from routers import jobs as jobs_router

    original_session_local = database._SessionLocal
    TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)
    database._SessionLocal = TestSessionLocal
    jobs_router.set_job_service(None)

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        jobs_router.set_job_service(None)
        # Restore original session local
        database._SessionLocal = original_session_local


@pytest.fixture
def sample_epg_file(test_session):
    """Create an EPG file owned by user 1."""
    from tests.fixtures.factories import create_epg_file
    return create_epg_file(test_session, owner_id=1, url="http://epg.test/guide.xml")


@pytest.fixture
def sample_playlist(test_session):
    """Create an M3U playlist owned by user 1."""
    from tests.fixtures.factories import create_playlist
    return create_playlist(test_session, owner_id=1, playlist_type="m3u", url="http://provider.test/list.m3u")


# Pytest-asyncio configuration
@pytest.fixture(scope="session")
def event_loop_policy():
    """Use the default event loop policy."""
    import asyncio
    return asyncio.DefaultEventLoopPolicy()
