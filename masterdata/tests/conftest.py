from __future__ import annotations

import pytest

from masterdata.core.config import get_settings
from masterdata.persistence.db import build_engine, build_session_factory
from masterdata.persistence.schema import create_schema
from masterdata.services.store import build_store
from masterdata.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    # Point every test at its own SQLite file and a fixed local master key.
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'masterdata.db'}")
    monkeypatch.setenv("CRYPTO_PROVIDER", "local_kms")
    monkeypatch.setenv("CRYPTO_LOCAL_MASTER_KEY", "11" * 32)
    monkeypatch.setenv("SNAPSHOT_INTERVAL", "5")
    monkeypatch.setenv("EVENT_STORE_PAGE_SIZE", "4")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'masterdata.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return build_store(session_factory)


@pytest.fixture
async def tenant_id(store) -> str:
    await store.tenants.register("t1", "Tenant One", actor_id="platform")
    return "t1"
