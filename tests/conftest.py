"""Root pytest configuration for all tests."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from convopulse.cache import DataCache
from convopulse.config import CacheConfig


# Configure pytest-asyncio to use auto mode
# This is redundant with pyproject.toml but ensures it's set
pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(scope="session")
def anyio_backend():
    """Set anyio backend to asyncio."""
    return "asyncio"


@pytest.fixture
def now() -> datetime:
    """A fixed "current time" for clock-dependent tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def root_dir(tmp_path: Path) -> Path:
    """An empty conversation root."""
    root = tmp_path / "claude"
    (root / "projects").mkdir(parents=True)
    return root


@pytest.fixture
async def cache():
    """A DataCache that re-stats on every call, closed after the test."""
    data_cache = DataCache(CacheConfig(metadata_ttl=0))
    yield data_cache
    await data_cache.close()
