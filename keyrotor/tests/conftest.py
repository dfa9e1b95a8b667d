from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from keyrotor.core.config import get_settings
from keyrotor.persistence.db import create_schema
from keyrotor.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def keyrotor_env(monkeypatch) -> None:
    # Fixed master key and fast retries; settings are cached so clear around every test.
    monkeypatch.setenv("KEYSTORE_MASTER_KEY", "11" * 32)
    monkeypatch.setenv("ENCRYPTION_COMPONENT", "apiserver")
    monkeypatch.setenv("ENCRYPTION_DEFAULT_MODE", "identity")
    monkeypatch.setenv("MIGRATION_RETRY_BACKOFF_MS", "0")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path):
    # One SQLite file per test keeps shared state isolated.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'keyrotor.db'}")
    await create_schema(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
