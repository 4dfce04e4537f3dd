from __future__ import annotations

import os

# Must be set before anything imports channelprov.persistence.db.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from channelprov.core.config import get_settings
from channelprov.domain.models import Base
from channelprov.services.audit import ProvisioningStore
from channelprov.services.oauth_state import clear_memory_states
from channelprov.services.telemetry import reset_telemetry


_TEST_ENV = {
    "OAUTH_STATE_BACKEND": "memory",
    "META_APP_ID": "app_1",
    "META_APP_SECRET": "app_secret_1",
    "META_BSP_BUSINESS_ID": "bsp_1",
    "META_SYSTEM_USER_TOKEN": "system_tok",
}


@pytest.fixture(autouse=True)
def provisioning_settings(monkeypatch) -> None:
    # Every test starts from known provider settings and empty in-process state.
    for key, value in _TEST_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("CREDENTIAL_ENCRYPTION_KEY", raising=False)
    get_settings.cache_clear()
    clear_memory_states()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    clear_memory_states()


@pytest.fixture
async def session_factory():
    # In-memory SQLite shared across sessions through a single static connection.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def store(session_factory) -> ProvisioningStore:
    return ProvisioningStore(session_factory=session_factory)
