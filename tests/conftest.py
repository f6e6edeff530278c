"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine

from jobqueue.clock import utcnow
from jobqueue.config import Settings
from jobqueue.db import JobStore, close_db, get_engine, init_db
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.retry.policy import RetryPolicy
from jobqueue.worker.handlers import HandlerRegistry


class FakeClock:
    """
    Controllable UTC clock.

    Each reading advances by `tick` so records created back to back keep
    distinct created_at values (FIFO order stays deterministic).
    """

    def __init__(self, start: datetime | None = None, tick: timedelta = timedelta(microseconds=1)):
        self.current = start or utcnow()
        self.tick = tick

    def __call__(self) -> datetime:
        self.current += self.tick
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite database, one per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        worker_id="test-worker",
        concurrency=1,
        queues=["default"],
        max_retries=1,
        retry_base_delay_seconds=0,
        poll_interval_seconds=0.05,
        stale_inflight_threshold_seconds=60,
        stale_check_interval_seconds=60,
        log_level="DEBUG",
        log_format="console",
        prometheus_port=None,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on an isolated registry."""
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> HandlerRegistry:
    """Empty handler registry for per-test handlers."""
    return HandlerRegistry()


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create the async engine with the schema in place."""
    engine = get_engine(test_settings)
    await init_db(engine, create_tables=True)

    yield engine

    await close_db(engine)


@pytest.fixture
def store(engine: AsyncEngine, test_settings: Settings, clock: FakeClock) -> JobStore:
    """Queue store using the test clock and the test retry policy."""
    return JobStore(engine, RetryPolicy.from_settings(test_settings), clock=clock)
