import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from quote_reel.api.main import app, get_config, get_render_fn
from quote_reel.models import QuoteReelConfig
from quote_reel.queue import SQLiteJobStore
from quote_reel.render import dry_run


class FakeClock:
    """Settable UTC clock for stale-claim tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def temp_db():
    """Create temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_queue.db")


@pytest.fixture
def store(temp_db):
    """SQLiteJobStore on the temporary database."""
    s = SQLiteJobStore(temp_db, max_attempts=3)
    yield s
    s.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clocked_store(temp_db, clock):
    s = SQLiteJobStore(temp_db, max_attempts=3, clock=clock)
    yield s
    s.close()


@pytest.fixture
def config(temp_db):
    """Config pointing at the temporary database with a short render ceiling."""
    return QuoteReelConfig.from_dict(
        {
            "store": {"path": temp_db},
            "worker": {"max_jobs": None, "max_seconds": None, "job_timeout_s": 5.0},
            "reclaimer": {"stale_timeout_s": 60.0},
        }
    )


@pytest.fixture(scope="function")
async def client(config):
    app.dependency_overrides[get_config] = lambda: config
    app.dependency_overrides[get_render_fn] = lambda: dry_run

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
