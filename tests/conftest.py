"""Pytest configuration and fixtures."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from events import EventBus
from resources import Resource
from store import InMemoryResourceStore


@pytest.fixture
def event_bus():
    """An in-memory event bus."""
    return EventBus()


@pytest.fixture
def store():
    """An empty in-memory resource store without change notifications."""
    return InMemoryResourceStore()


@pytest.fixture
def make_webpage():
    """Factory for WebPage primaries."""

    def _make(name="site1", namespace="ns1", html="<h1>hi</h1>", **kwargs):
        return Resource(
            kind="WebPage",
            name=name,
            namespace=namespace,
            spec={"html": html},
            **kwargs,
        )

    return _make


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection with a usable transaction()."""
    conn = AsyncMock()
    transaction = AsyncMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def mock_pool(mock_connection):
    """Create a mock asyncpg pool whose acquire() yields mock_connection."""
    pool = AsyncMock()

    @asynccontextmanager
    async def acquire():
        yield mock_connection

    pool.acquire = acquire
    return pool
