"""
Test configuration for leadquarry.

Fixtures provide isolated instances of every stateful component (fake clocks,
temporary SQLite files, in-memory Redis) so tests never share global state.
"""

import asyncio
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator, List

import fakeredis
import pytest
import pytest_asyncio

from leadquarry.config import Config, RateLimitConfig, SharedStateConfig, SQLiteConfig
from leadquarry.protocols import BusinessCandidate, SearchRequest
from leadquarry.shared_state import SharedStateMirror
from leadquarry.storage import SQLiteManager

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test left behind (mirror writes, background runs)."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide temporary directory for test data."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class FakeClock:
    """Manually advanced clock whose ``sleep`` moves time instead of waiting."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_config(temp_dir) -> Config:
    """Provide test configuration."""
    config = Config()
    config.storage = SQLiteConfig(db_path=temp_dir / "test.db", pool_size=2)
    config.monitoring.enabled = False
    config.rate_limit = RateLimitConfig(respect_robots=False, min_delay_ms=0, max_delay_ms=0)
    config.stealth.human_behavior = False
    return config


# ============================================================================
# Storage and shared state
# ============================================================================


@pytest_asyncio.fixture
async def db(temp_dir) -> AsyncGenerator[SQLiteManager, None]:
    """Initialized SQLite store on a temporary file."""
    manager = SQLiteManager(SQLiteConfig(db_path=temp_dir / "leadquarry.db", pool_size=2))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[fakeredis.FakeAsyncRedis, None]:
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def mirror(redis_client) -> SharedStateMirror:
    return SharedStateMirror(SharedStateConfig(enabled=True), client=redis_client)


# ============================================================================
# Domain fixtures
# ============================================================================


@pytest.fixture
def dentist_request() -> SearchRequest:
    return SearchRequest(query="dentist", location="Austin, TX", count=10)


@pytest.fixture
def sample_candidates() -> List[BusinessCandidate]:
    return [
        BusinessCandidate(
            name="Bright Smiles Dental",
            source="yelp",
            phone="(512) 555-0100",
            rating=4.6,
            review_count=120,
        ),
        BusinessCandidate(
            name="Bright Smiles Dental LLC",
            source="healthgrades",
            website="https://brightsmiles.example",
            email="info@brightsmiles.example",
            email_confidence=0.7,
            review_count=300,
        ),
        BusinessCandidate(
            name="Congress Avenue Orthodontics",
            source="yelp",
            address="100 Congress Ave, Austin, TX 78701",
        ),
    ]
