"""Shared test fixtures and configuration."""

from __future__ import annotations

import datetime as dt
import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("REISTANDARD_ENV", "test")
os.environ.setdefault("REISTANDARD_LOG_LEVEL", "WARNING")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", "test-master-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("VAPID_EMAIL", "ops@example.com")
os.environ.setdefault("NEXT_PUBLIC_VAPID_PUBLIC_KEY", "test-vapid-public")
os.environ.setdefault("VAPID_PRIVATE_KEY", "test-vapid-private")

import reistandard.config as config_module
from reistandard.config import Settings
from reistandard.database import create_tables
from reistandard.modules.scheduler.models import (
    MessageType,
    RecurrenceType,
    TaskSnapshot,
)
from reistandard.modules.scheduler.store import TaskStore
from reistandard.security.encryption import derive_user_key

MASTER_SECRET = "test-master-secret"
USER_ID = "user-1"
SUBSCRIPTION = {
    "endpoint": "https://push.example.com/send/abc",
    "keys": {"p256dh": "BPublicKey", "auth": "authSecret"},
}


@pytest.fixture(autouse=True)
def reset_settings():
    """Drop the cached Settings so env changes in a test are picked up."""
    config_module._settings = None
    yield
    config_module._settings = None


@pytest.fixture
def settings() -> Settings:
    """Return test settings."""
    return Settings(
        reistandard_env="test",
        database_url="sqlite+aiosqlite:///:memory:",
        encryption_key=MASTER_SECRET,
        cron_secret="test-cron-secret",
        vapid_email="ops@example.com",
        vapid_public_key="test-vapid-public",
        vapid_private_key="test-vapid-private",
    )


@pytest.fixture
def user_key() -> bytes:
    return derive_user_key(MASTER_SECRET, USER_ID)


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """A fresh in-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> TaskStore:
    return TaskStore(session_factory)


@pytest.fixture
def make_snapshot():
    """Factory for a due fixed-message snapshot, overriding any field."""

    def _make(**overrides: Any) -> TaskSnapshot:
        fields: dict[str, Any] = {
            "id": 1,
            "uuid": "6f1c2b9e-8c1d-4d3a-9f57-2a0c8e4b1d11",
            "user_id": USER_ID,
            "contact_name": "Rei",
            "message_type": MessageType.FIXED,
            "message_subtype": "chat",
            "next_send_at": dt.datetime(2026, 1, 1, 12, 0, tzinfo=dt.UTC),
            "recurrence_type": RecurrenceType.NONE,
            "push_subscription": dict(SUBSCRIPTION),
        }
        fields.update(overrides)
        return TaskSnapshot(**fields)

    return _make


@pytest.fixture
def subscription() -> dict[str, Any]:
    return {"endpoint": SUBSCRIPTION["endpoint"], "keys": dict(SUBSCRIPTION["keys"])}
