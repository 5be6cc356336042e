"""
Pytest configuration and shared fixtures.

config.py reads APP_ENV-prefixed variables at import time, so the local
environment is set up here before any project module is imported.
"""
import os

os.environ.setdefault("APP_ENV", "local")
os.environ.setdefault("LOCAL_API_TOKEN", "test-api-token")
os.environ.setdefault("LOCAL_WEBHOOK_SECRET", "test-webhook-secret")

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from crm.core.feature_flags import reset_feature_flags


@pytest.fixture(autouse=True)
def fresh_feature_flags(monkeypatch):
    """Every test starts from default flags; set FEATURE_* via monkeypatch before use."""
    for key in (
        "FEATURE_PAYMENTS_ENABLED",
        "FEATURE_BACKGROUND_WORKERS_ENABLED",
        "FEATURE_TIERED_COMMISSION_ENABLED",
    ):
        monkeypatch.delenv(key, raising=False)
    reset_feature_flags()
    yield
    reset_feature_flags()


@pytest.fixture
def now():
    """Fixed datetime for deterministic tests"""
    return datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def user_id():
    return uuid.UUID("11111111-1111-1111-1111-111111111111")


@pytest.fixture
def partner_id():
    return uuid.UUID("22222222-2222-2222-2222-222222222222")


@pytest.fixture
def partner_row(partner_id, now):
    """Partner row as returned by asyncpg (dict-compatible)"""
    return {
        "id": partner_id,
        "email": "partner@example.com",
        "full_name": "Test Partner",
        "commission_percent": 10,
        "commission_slabs": None,
        "is_active": True,
        "total_revenue": Decimal("0"),
        "total_added": 0,
        "total_converted": 0,
        "created_at": now,
        "updated_at": now,
    }


@pytest.fixture
def mock_conn():
    """asyncpg connection mock; conn.transaction() works as an async context manager"""
    conn = MagicMock()
    conn.fetchrow = AsyncMock()
    conn.fetchval = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.execute = AsyncMock(return_value="UPDATE 0")

    @asynccontextmanager
    async def _transaction():
        yield

    conn.transaction = MagicMock(side_effect=_transaction)
    return conn


@pytest.fixture
def mock_pool(mock_conn):
    """asyncpg pool mock whose acquire() yields mock_conn"""
    pool = MagicMock()

    @asynccontextmanager
    async def _acquire():
        yield mock_conn

    pool.acquire = MagicMock(side_effect=_acquire)
    return pool


@pytest.fixture
def patched_pool(monkeypatch, mock_pool):
    """Route database.get_pool() to mock_pool"""
    import database
    monkeypatch.setattr(database, "get_pool", AsyncMock(return_value=mock_pool))
    return mock_pool
